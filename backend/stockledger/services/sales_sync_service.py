# Overview: Service-layer sales sync; pulls POS sale lines from the analytics
# store, expands them through recipes and posts one idempotent `sale`
# deduction per (bill, bill time, branch, ingredient).

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from urllib.parse import quote, unquote

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Branch, Department, InventoryTransaction, Product, SalesSyncLog
from ..models.inventory import REF_RECIPE_SALE, REF_STOCK_CHECK, TX_SALE
from ..models.sync import SYNC_CANCELLED, SYNC_COMPLETED, SYNC_FAILED
from stockledger.time_utils import local_to_utc, parse_business_date, utcnow
from .analytics_client import AnalyticsUnavailableError, default_source
from .ledger_service import post, quantize, reference_exists
from .recipe_service import RecipeBook, expand
from .unit_conversion_service import UnitConversionResolver


SALE_REFERENCE_KIND = "recipe-sale-bill"

REASON_NO_STOCK_CHECK = "no_stock_check_found"
REASON_PRODUCT_NOT_FOUND = "product_not_found"


class SalesSyncError(Exception):
    """Raised when a sales sync cannot be started."""
    pass


@dataclass(frozen=True)
class SaleReference:
    """
    Identity of one deduction: one ingredient of one bill in one department.

    Serialized as
        <kind>:<YYYY-MM-DD>:<HHMMSS>:<branch>:<department>:<product>:<document>
    with the document id percent-encoded, so every field round-trips exactly
    and equal references always serialize to the same string.
    """
    kind: str
    sale_date: date
    time_of_day: time
    branch_id: int
    department_id: int
    product_id: int
    document_id: str

    def serialize(self) -> str:
        return ":".join((
            self.kind,
            self.sale_date.isoformat(),
            self.time_of_day.strftime("%H%M%S"),
            str(self.branch_id),
            str(self.department_id),
            str(self.product_id),
            quote(self.document_id, safe=""),
        ))

    @classmethod
    def parse(cls, value: str) -> "SaleReference":
        parts = value.split(":")
        if len(parts) != 7:
            raise ValueError(f"not a sale reference: {value!r}")
        kind, sale_date, tod, branch_id, department_id, product_id, document_id = parts
        return cls(
            kind=kind,
            sale_date=date.fromisoformat(sale_date),
            time_of_day=datetime.strptime(tod, "%H%M%S").time(),
            branch_id=int(branch_id),
            department_id=int(department_id),
            product_id=int(product_id),
            document_id=unquote(document_id),
        )

    @property
    def sold_at(self) -> datetime:
        return datetime.combine(self.sale_date, self.time_of_day)


@dataclass
class PlannedDeduction:
    reference: SaleReference
    quantity: Decimal

    @property
    def reference_id(self) -> str:
        return self.reference.serialize()


@dataclass
class SyncResult:
    start: date
    end: date
    branch_id: int | None = None
    dry_run: bool = False
    log_id: int | None = None
    planned_deductions: int = 0
    applied_deductions: int = 0
    skipped_existing: int = 0
    planned_quantity: Decimal = Decimal("0")
    applied_quantity: Decimal = Decimal("0")
    cancelled: bool = False
    missing_conversions: list = field(default_factory=list)
    missing_recipes: list = field(default_factory=list)
    missing_branch_mapping: list = field(default_factory=list)
    unresolved_items: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "branch_id": self.branch_id,
            "dry_run": self.dry_run,
            "log_id": self.log_id,
            "planned_deductions": self.planned_deductions,
            "applied_deductions": self.applied_deductions,
            "skipped_existing": self.skipped_existing,
            "planned_quantity": float(self.planned_quantity),
            "applied_quantity": float(self.applied_quantity),
            "cancelled": self.cancelled,
            "missing_conversions": self.missing_conversions,
            "missing_recipes": self.missing_recipes,
            "missing_branch_mapping": self.missing_branch_mapping,
            "unresolved_items": self.unresolved_items,
        }


def _branch_map(branch_id: int | None) -> dict[str, Branch]:
    """analytics_branch_code -> Branch for the branches in scope."""
    if branch_id is not None:
        branch = db.session.get(Branch, branch_id)
        if branch is None:
            raise SalesSyncError("branch not found")
        if not branch.analytics_branch_code:
            raise SalesSyncError("Branch is missing analytics branch code")
        return {branch.analytics_branch_code: branch}

    branches = (
        db.session.query(Branch)
        .filter(
            Branch.is_active.is_(True),
            Branch.analytics_branch_code.isnot(None),
            Branch.analytics_branch_code != "",
        )
        .all()
    )
    if not branches:
        raise SalesSyncError("No branches configured with an analytics branch code")
    return {b.analytics_branch_code: b for b in branches}


def _stock_check_departments(branch_ids, product_ids) -> dict[tuple[int, int], int]:
    """
    (product_id, branch_id) -> department that deducts sales of the product.

    A product is deducted where a stock-check adjustment has been applied for
    it; a recorded but unapplied count does not link the product. When
    several active departments of the branch qualify, the lowest id wins.
    """
    if not branch_ids or not product_ids:
        return {}
    rows = (
        db.session.query(
            InventoryTransaction.product_id,
            Department.branch_id,
            func.min(InventoryTransaction.department_id),
        )
        .join(Department, Department.id == InventoryTransaction.department_id)
        .filter(
            InventoryTransaction.reference_type == REF_STOCK_CHECK,
            Department.is_active.is_(True),
            Department.branch_id.in_(list(branch_ids)),
            InventoryTransaction.product_id.in_(list(product_ids)),
        )
        .group_by(InventoryTransaction.product_id, Department.branch_id)
        .all()
    )
    return {(product_id, branch_id): department_id for product_id, branch_id, department_id in rows}


def plan_deductions(lines, branches: dict[str, Branch], result: SyncResult) -> list[PlannedDeduction]:
    """
    Turn sale lines into deduction rows, sorted by bill time.

    Lines that cannot be deducted are reported on result and skipped.
    """
    resolver = UnitConversionResolver.load()
    book = RecipeBook.load(line.menu_barcode for line in lines)

    # (branch_id, sold_at, document_id, product_id) -> quantity
    # Bill numbers restart daily, so the bill time is part of the identity
    usage: dict[tuple[int, datetime, str, int], Decimal] = {}
    for line in lines:
        branch = branches.get(line.branch_code)
        if branch is None:
            result.missing_branch_mapping.append({
                "sale_date": line.sale_date.isoformat(),
                "document_id": line.document_id,
                "branch_code": line.branch_code,
                "menu_barcode": line.menu_barcode,
                "quantity": float(line.quantity),
            })
            continue

        expansion = expand(line.menu_barcode, line.quantity, resolver, book=book)
        if not expansion.recipe_found:
            result.missing_recipes.append({
                "sale_date": line.sale_date.isoformat(),
                "document_id": line.document_id,
                "branch_id": branch.id,
                "menu_barcode": line.menu_barcode,
                "menu_name": line.menu_name,
                "quantity": float(line.quantity),
            })
            continue

        for missing in expansion.missing_conversions:
            item = missing.to_dict()
            item.update({
                "sale_date": line.sale_date.isoformat(),
                "document_id": line.document_id,
                "branch_id": branch.id,
            })
            result.missing_conversions.append(item)

        for ingredient in expansion.ingredients:
            key = (branch.id, line.sold_at, line.document_id, ingredient.product_id)
            usage[key] = usage.get(key, Decimal("0")) + ingredient.quantity

    product_ids = {product_id for _, _, _, product_id in usage}
    known_products = {
        pid for (pid,) in db.session.query(Product.id).filter(Product.id.in_(product_ids)).all()
    } if product_ids else set()
    departments = _stock_check_departments({b for b, _, _, _ in usage}, product_ids)

    planned = []
    for (branch_id, sold_at, document_id, product_id), quantity in usage.items():
        quantity = quantize(quantity)
        if quantity == 0:
            continue
        unresolved = {
            "sale_date": sold_at.date().isoformat(),
            "document_id": document_id,
            "branch_id": branch_id,
            "product_id": product_id,
            "quantity": float(quantity),
        }
        if product_id not in known_products:
            result.unresolved_items.append({**unresolved, "reason": REASON_PRODUCT_NOT_FOUND})
            continue
        department_id = departments.get((product_id, branch_id))
        if department_id is None:
            result.unresolved_items.append({**unresolved, "reason": REASON_NO_STOCK_CHECK})
            continue

        planned.append(PlannedDeduction(
            reference=SaleReference(
                kind=SALE_REFERENCE_KIND,
                sale_date=sold_at.date(),
                time_of_day=sold_at.time().replace(microsecond=0),
                branch_id=branch_id,
                department_id=department_id,
                product_id=product_id,
                document_id=document_id,
            ),
            quantity=quantity,
        ))

    planned.sort(key=lambda p: (
        p.reference.sold_at,
        p.reference.document_id,
        p.reference.product_id,
        p.reference.department_id,
    ))
    return planned


def _finish_log(log: SalesSyncLog, status: str, result: SyncResult | None = None, error: str | None = None) -> None:
    log.status = status
    log.finished_at = utcnow()
    if result is not None:
        log.planned_deductions = result.planned_deductions
        log.applied_deductions = result.applied_deductions
        log.skipped_existing = result.skipped_existing
    if error:
        log.error_message = error[:2000]
    db.session.commit()


def sync_sales(
    start,
    end,
    branch_id: int | None = None,
    *,
    dry_run: bool = False,
    actor: int | None = None,
    source=None,
    cancel_event=None,
) -> SyncResult:
    """
    Deduct recipe usage of POS sales in [start, end] (local business dates).

    Each planned row is its own unit of work, posted with idempotent=True, so
    a crashed or cancelled run can simply be re-run: rows that made it in are
    counted as skipped_existing. Rows are posted in bill-time order.

    Raises AnalyticsUnavailableError (retryable) when the analytics store
    cannot be reached; nothing is posted in that case.
    """
    start = parse_business_date(start)
    end = parse_business_date(end)
    if start is None or end is None:
        raise SalesSyncError("start and end dates are required")
    if start > end:
        raise SalesSyncError("start must be <= end")

    branches = _branch_map(branch_id)
    result = SyncResult(start=start, end=end, branch_id=branch_id, dry_run=dry_run)

    log = SalesSyncLog(
        start_date=start,
        end_date=end,
        branch_id=branch_id,
        dry_run=dry_run,
        triggered_by=actor,
    )
    db.session.add(log)
    db.session.commit()
    result.log_id = log.id

    current_app.logger.info(
        "Sales sync %s started: %s..%s branch=%s dry_run=%s",
        log.id, start, end, branch_id, dry_run,
    )

    offset_hours = current_app.config.get("ANALYTICS_TIME_OFFSET_HOURS", 0)
    try:
        source = source or default_source()
        lines = source.fetch_sale_lines(start, end, list(branches))
        planned = plan_deductions(lines, branches, result)
        result.planned_deductions = len(planned)
        result.planned_quantity = sum((p.quantity for p in planned), Decimal("0"))

        for row in planned:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break

            ref = row.reference
            if dry_run:
                if reference_exists(REF_RECIPE_SALE, row.reference_id, ref.product_id, ref.department_id):
                    result.skipped_existing += 1
                continue

            entry = post(
                ref.product_id,
                ref.department_id,
                TX_SALE,
                -row.quantity,
                reference_type=REF_RECIPE_SALE,
                reference_id=row.reference_id,
                notes=f"Recipe deduction for POS bill {ref.document_id} on {ref.sale_date} {ref.time_of_day}",
                actor=actor,
                occurred_at=local_to_utc(ref.sold_at, offset_hours),
                idempotent=True,
            )
            if entry is None:
                result.skipped_existing += 1
                continue
            result.applied_deductions += 1
            result.applied_quantity += row.quantity
    except AnalyticsUnavailableError as exc:
        db.session.rollback()
        _finish_log(log, SYNC_FAILED, result, str(exc))
        current_app.logger.warning("Sales sync %s: analytics unavailable: %s", log.id, exc)
        raise
    except Exception as exc:
        db.session.rollback()
        _finish_log(log, SYNC_FAILED, result, str(exc))
        current_app.logger.exception("Sales sync %s failed", log.id)
        raise

    _finish_log(log, SYNC_CANCELLED if result.cancelled else SYNC_COMPLETED, result)
    current_app.logger.info(
        "Sales sync %s %s: planned=%d applied=%d skipped_existing=%d unresolved=%d "
        "missing_recipes=%d missing_conversions=%d missing_branch_mapping=%d",
        log.id,
        "cancelled" if result.cancelled else "finished",
        result.planned_deductions,
        result.applied_deductions,
        result.skipped_existing,
        len(result.unresolved_items),
        len(result.missing_recipes),
        len(result.missing_conversions),
        len(result.missing_branch_mapping),
    )
    return result


def sync_previous_day(today: date | None = None, **kwargs) -> SyncResult:
    """Scheduled job: sync yesterday's sales for every mapped branch."""
    today = today or (utcnow() + timedelta(hours=current_app.config.get("ANALYTICS_TIME_OFFSET_HOURS", 0))).date()
    yesterday = today - timedelta(days=1)
    return sync_sales(yesterday, yesterday, **kwargs)


def list_sync_logs(limit: int = 50) -> list[SalesSyncLog]:
    limit = max(1, min(int(limit), 500))
    return db.session.query(SalesSyncLog).order_by(SalesSyncLog.id.desc()).limit(limit).all()
