# backend/stockledger/services/count_service.py
"""
Physical stock check (count) capture and variance reconciliation.

WHY: A count is only meaningful against the ledger state at the moment it
was taken. Each StockCheck captures a ledger cursor when it is recorded, so
its variance (counted - system at count time) stays reproducible however
many movements are posted afterwards.

RECONCILIATION RULES:
1. Adjustments are opt-in per product; nothing is applied implicitly.
2. A count is applied at most once (adjustment with reference
   stock_check/<count id>).
3. A count whose product/department has an APPLIED count on a later date is
   never appliable: applying it would double-correct or regress the balance.
4. Zero-variance counts are skipped, not marked applied.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app

from stockledger.extensions import db
from stockledger.models import Department, InventoryTransaction, Product, StockCheck
from stockledger.models.inventory import REF_STOCK_CHECK, TX_ADJUSTMENT
from stockledger.time_utils import parse_business_date, utcnow
from stockledger.validation import ConflictError, parse_int, parse_quantity
from stockledger.services.concurrency import run_with_retry
from stockledger.services.ledger_service import (
    Posting,
    append_locked,
    balance_as_of,
    get_balance,
    last_entry_id,
    lock_keys,
    quantize,
)


class CountError(Exception):
    """Raised when count operations fail."""
    pass


@dataclass
class AdjustmentResult:
    total_adjustments: int = 0
    skipped_already_applied: int = 0
    skipped_newer_applied: int = 0
    skipped_zero_variance: int = 0
    skipped_not_counted: int = 0
    adjustments: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_adjustments": self.total_adjustments,
            "skipped_already_applied": self.skipped_already_applied,
            "skipped_newer_applied": self.skipped_newer_applied,
            "skipped_zero_variance": self.skipped_zero_variance,
            "skipped_not_counted": self.skipped_not_counted,
            "adjustments": self.adjustments,
        }


def _require_department(department_id: int) -> Department:
    department = db.session.get(Department, department_id)
    if department is None:
        raise CountError("department not found")
    if not department.is_active:
        raise CountError("department is inactive")
    return department


def _applied_check_ids(check_ids) -> set[int]:
    """Ids of the given counts that already have their adjustment posted."""
    refs = [str(i) for i in check_ids]
    if not refs:
        return set()
    rows = (
        db.session.query(InventoryTransaction.reference_id)
        .filter(
            InventoryTransaction.reference_type == REF_STOCK_CHECK,
            InventoryTransaction.reference_id.in_(refs),
        )
        .distinct()
        .all()
    )
    return {int(ref) for (ref,) in rows}


def _has_newer_applied(check: StockCheck) -> bool:
    newer_ids = [
        cid
        for (cid,) in db.session.query(StockCheck.id).filter(
            StockCheck.product_id == check.product_id,
            StockCheck.department_id == check.department_id,
            StockCheck.check_date > check.check_date,
        ).all()
    ]
    return bool(_applied_check_ids(newer_ids))


def record_counts(department_id: int, check_date, items, actor: int | None = None) -> list[StockCheck]:
    """
    Record physical counts for one department and business date.

    items: [{"product_id": int, "counted_quantity": number}, ...]

    Each key is locked while its cursor is captured, so the cursor and the
    balance snapshot describe the same ledger state. Re-counting a product
    on the same date supersedes the earlier count unless it was applied.
    """
    check_date = parse_business_date(check_date)
    if check_date is None:
        raise CountError("check_date is required")
    if not items:
        raise CountError("At least one counted item is required")

    counted: dict[int, Decimal] = {}
    for item in items:
        product_id = parse_int(item.get("product_id"), "product_id")
        quantity = quantize(parse_quantity(item.get("counted_quantity"), "counted_quantity"))
        if quantity < 0:
            raise CountError(f"counted_quantity must be >= 0 for product {product_id}")
        if product_id in counted:
            raise CountError(f"Duplicate product {product_id} in count")
        counted[product_id] = quantity

    _require_department(department_id)
    found = {
        pid for (pid,) in db.session.query(Product.id).filter(Product.id.in_(list(counted))).all()
    }
    missing = sorted(set(counted) - found)
    if missing:
        raise CountError(f"Products not found: {missing}")

    def _op() -> list[StockCheck]:
        balances = lock_keys((pid, department_id) for pid in counted)
        existing = {
            c.product_id: c
            for c in db.session.query(StockCheck).filter(
                StockCheck.department_id == department_id,
                StockCheck.check_date == check_date,
                StockCheck.product_id.in_(list(counted)),
            ).all()
        }
        applied = _applied_check_ids(c.id for c in existing.values())

        recorded = []
        for product_id in sorted(counted):
            check = existing.get(product_id)
            if check is not None and check.id in applied:
                raise ConflictError(
                    f"Count for product {product_id} on {check_date} was already applied"
                )
            if check is None:
                check = StockCheck(
                    department_id=department_id,
                    product_id=product_id,
                    check_date=check_date,
                )
                db.session.add(check)

            check.counted_quantity = counted[product_id]
            check.ledger_cursor_id = last_entry_id(product_id, department_id)
            check.system_quantity = quantize(balances[(product_id, department_id)].quantity or 0)
            check.counted_by = actor
            check.checked_at = utcnow()
            recorded.append(check)

        db.session.commit()
        return recorded

    try:
        recorded = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "Recorded %d stock checks for department %s on %s", len(recorded), department_id, check_date,
    )
    return recorded


def list_stock_checks(department_id: int, check_date) -> list[StockCheck]:
    check_date = parse_business_date(check_date)
    return (
        db.session.query(StockCheck)
        .filter(StockCheck.department_id == department_id, StockCheck.check_date == check_date)
        .order_by(StockCheck.product_id.asc())
        .all()
    )


def _variance(check: StockCheck) -> tuple[Decimal, Decimal]:
    system = balance_as_of(check.product_id, check.department_id, check.ledger_cursor_id)
    return system, quantize(check.counted_quantity) - system


def preview_variance(check_date, department_id: int) -> list[dict]:
    """
    Variance of every count on check_date in the department. Read-only.

    system_quantity is the ledger balance at the count's cursor, not the
    current balance (which is reported separately as current_quantity).
    """
    checks = list_stock_checks(department_id, check_date)
    applied = _applied_check_ids(c.id for c in checks)

    rows = []
    for check in checks:
        system, variance = _variance(check)
        is_applied = check.id in applied
        newer_applied = _has_newer_applied(check)
        price = check.product.default_price if check.product is not None else None
        rows.append({
            "stock_check_id": check.id,
            "product_id": check.product_id,
            "product_name": check.product.name if check.product is not None else None,
            "department_id": check.department_id,
            "check_date": check.check_date.isoformat(),
            "counted_quantity": float(check.counted_quantity),
            "system_quantity": float(system),
            "variance": float(variance),
            "current_quantity": float(get_balance(check.product_id, check.department_id)),
            "variance_value": float(variance * Decimal(str(price))) if price is not None else None,
            "ledger_cursor_id": check.ledger_cursor_id,
            "is_applied": is_applied,
            "has_newer_applied": newer_applied,
            "can_apply": not is_applied and not newer_applied and variance != 0,
        })
    return rows


def apply_adjustment(check_date, department_id: int, product_ids, actor: int | None = None) -> AdjustmentResult:
    """
    Post adjustments for the selected products' counts on check_date.

    One unit of work: keys are locked in canonical order, then the applied
    and newer-applied checks are re-evaluated under the lock. Skipped counts
    leave the ledger untouched.
    """
    check_date = parse_business_date(check_date)
    if check_date is None:
        raise CountError("check_date is required")
    selected = sorted({parse_int(pid, "product_id") for pid in (product_ids or [])})
    if not selected:
        raise CountError("Select at least one product to adjust")
    _require_department(department_id)

    def _op() -> AdjustmentResult:
        result = AdjustmentResult()
        checks = {
            c.product_id: c
            for c in db.session.query(StockCheck).filter(
                StockCheck.department_id == department_id,
                StockCheck.check_date == check_date,
                StockCheck.product_id.in_(selected),
            ).all()
        }
        result.skipped_not_counted = len([pid for pid in selected if pid not in checks])
        if not checks:
            return result

        balances = lock_keys((pid, department_id) for pid in checks)
        applied = _applied_check_ids(c.id for c in checks.values())

        for product_id in sorted(checks):
            check = checks[product_id]
            if check.id in applied:
                result.skipped_already_applied += 1
                continue
            if _has_newer_applied(check):
                result.skipped_newer_applied += 1
                continue
            system, variance = _variance(check)
            if variance == 0:
                result.skipped_zero_variance += 1
                continue

            entry = append_locked(
                Posting(
                    product_id=product_id,
                    department_id=department_id,
                    transaction_type=TX_ADJUSTMENT,
                    quantity=variance,
                    reference_type=REF_STOCK_CHECK,
                    reference_id=str(check.id),
                    notes=(
                        f"Stock check {check_date.isoformat()}: counted {check.counted_quantity}, "
                        f"system {system}"
                    ),
                    created_by=actor,
                ),
                balances[(product_id, department_id)],
            )
            result.total_adjustments += 1
            result.adjustments.append({
                "stock_check_id": check.id,
                "product_id": product_id,
                "variance": float(variance),
                "transaction": entry.to_dict(),
            })

        db.session.commit()
        return result

    try:
        result = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "Applied %d stock check adjustments for department %s on %s "
        "(already_applied=%d newer_applied=%d zero_variance=%d not_counted=%d)",
        result.total_adjustments, department_id, check_date,
        result.skipped_already_applied, result.skipped_newer_applied,
        result.skipped_zero_variance, result.skipped_not_counted,
    )
    return result
