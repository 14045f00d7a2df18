# Overview: Historical backfill jobs; reconstruct ledger entries for past
# receiving events and internal-storage transfers without double-posting.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import (
    Department,
    InventoryTransaction,
    Order,
    OrderItem,
    Product,
    ProductGroup,
    ProductGroupInternalScope,
)
from ..models.inventory import (
    REF_ORDER_RECEIVING,
    TX_ADJUSTMENT,
    TX_RECEIVE,
    TX_TRANSFER_IN,
    TX_TRANSFER_OUT,
)
from ..validation import ValidationError
from stockledger.time_utils import business_day_bounds
from .concurrency import run_with_retry
from .ledger_service import LedgerError, Posting, append_locked, lock_keys, quantize


MODE_DRY_RUN = "dry-run"
MODE_EXECUTE = "execute"

MAX_SAMPLES = 30

SKIP_ALREADY_POSTED = "already_posted"
SKIP_ZERO_QUANTITY = "zero_quantity"
SKIP_NON_COUNTABLE = "non_countable"
SKIP_NO_SCOPE = "no_scope"
SKIP_AMBIGUOUS_SCOPE = "ambiguous_scope"
SKIP_TARGET_NOT_FOUND = "target_not_found"
SKIP_SAME_DEPARTMENT = "same_department"
SKIP_ZERO_TARGET_NET = "zero_target_net"
SKIP_ALREADY_SYNCED = "already_synced"

# Movement types that make up the target department's net for an order item
TARGET_NET_TYPES = (TX_RECEIVE, TX_ADJUSTMENT, TX_TRANSFER_IN, TX_TRANSFER_OUT)
SOURCE_NET_TYPES = (TX_TRANSFER_IN, TX_TRANSFER_OUT)


class BackfillError(Exception):
    """Raised when an executed backfill is rolled back because items failed."""

    def __init__(self, message: str, summary: "BackfillSummary"):
        super().__init__(message)
        self.summary = summary


@dataclass
class BackfillSummary:
    job: str
    mode: str
    start_date: str | None = None
    end_date: str | None = None
    candidates: int = 0
    patched: int = 0
    skipped: dict = field(default_factory=dict)
    errors: int = 0
    samples: list = field(default_factory=list)
    cancelled: bool = False

    def skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1

    def sample(self, item: dict) -> None:
        if len(self.samples) < MAX_SAMPLES:
            self.samples.append(item)

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "mode": self.mode,
            "scope": {"start_date": self.start_date, "end_date": self.end_date},
            "candidates": self.candidates,
            "patched": self.patched,
            "skipped": dict(self.skipped),
            "errors": self.errors,
            "samples": list(self.samples),
            "cancelled": self.cancelled,
        }


@dataclass
class _PlannedItem:
    order_item_id: int
    posting: Posting
    sample: dict


def _received_items(start, end):
    """Received order lines in scope, oldest receipt first."""
    query = (
        db.session.query(OrderItem, Order, Product)
        .join(Order, Order.id == OrderItem.order_id)
        .join(Product, Product.id == OrderItem.product_id)
        .filter(OrderItem.received_at.isnot(None))
    )
    if start is not None or end is not None:
        offset = current_app.config.get("ANALYTICS_TIME_OFFSET_HOURS", 0)
        lower, upper = business_day_bounds(start or end, end or start, offset)
        if start is not None:
            query = query.filter(OrderItem.received_at >= lower)
        if end is not None:
            query = query.filter(OrderItem.received_at < upper)
    return query.order_by(OrderItem.received_at.asc(), OrderItem.id.asc())


def _net_for_order_item(order_item_id: int, department_id: int, types) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(InventoryTransaction.quantity), 0))
        .filter(
            InventoryTransaction.reference_type == REF_ORDER_RECEIVING,
            InventoryTransaction.reference_id == str(order_item_id),
            InventoryTransaction.department_id == department_id,
            InventoryTransaction.transaction_type.in_(types),
        )
        .scalar()
    )
    return quantize(total or 0)


def _posted_order_items(order_item_ids) -> set[int]:
    refs = [str(i) for i in order_item_ids]
    if not refs:
        return set()
    rows = (
        db.session.query(InventoryTransaction.reference_id)
        .filter(
            InventoryTransaction.reference_type == REF_ORDER_RECEIVING,
            InventoryTransaction.transaction_type == TX_RECEIVE,
            InventoryTransaction.reference_id.in_(refs),
        )
        .distinct()
        .all()
    )
    return {int(ref) for (ref,) in rows}


def resolve_source_department(product_group_id: int, target_department_id: int) -> tuple[int | None, str]:
    """
    Internal storage department that stocks a product group for a target.

    - exactly one active scope department -> it ("single_scope")
    - several, exactly one in the target's branch -> it ("same_branch_single_scope")
    - otherwise None with "no_scope" / "ambiguous_scope" / "target_not_found"
    Never guesses between candidates.
    """
    scopes = (
        db.session.query(ProductGroupInternalScope.department_id, Department.branch_id)
        .join(Department, Department.id == ProductGroupInternalScope.department_id)
        .filter(
            ProductGroupInternalScope.product_group_id == product_group_id,
            Department.is_active.is_(True),
        )
        .order_by(ProductGroupInternalScope.id.asc())
        .all()
    )
    if not scopes:
        return None, SKIP_NO_SCOPE
    if len(scopes) == 1:
        return scopes[0][0], "single_scope"

    target = db.session.get(Department, target_department_id)
    if target is None:
        return None, SKIP_TARGET_NOT_FOUND
    same_branch = [dept_id for dept_id, branch_id in scopes if branch_id == target.branch_id]
    if len(same_branch) == 1:
        return same_branch[0], "same_branch_single_scope"
    return None, SKIP_AMBIGUOUS_SCOPE


def _plan_receiving(summary: BackfillSummary, start, end) -> list[_PlannedItem]:
    rows = _received_items(start, end).all()
    summary.candidates = len(rows)
    posted = _posted_order_items(item.id for item, _, _ in rows)

    planned = []
    for item, order, product in rows:
        if item.id in posted:
            summary.skip(SKIP_ALREADY_POSTED)
            continue
        quantity = quantize(item.received_quantity or 0)
        if quantity == 0:
            summary.skip(SKIP_ZERO_QUANTITY)
            continue
        if not product.is_countable:
            summary.skip(SKIP_NON_COUNTABLE)
            continue

        note = (item.receive_notes or "").strip() or f"Backfill receipt for order {order.order_number}"
        planned.append(_PlannedItem(
            order_item_id=item.id,
            posting=Posting(
                product_id=item.product_id,
                department_id=order.department_id,
                transaction_type=TX_RECEIVE,
                quantity=quantity,
                reference_type=REF_ORDER_RECEIVING,
                reference_id=str(item.id),
                notes=note,
                created_by=item.received_by_user_id,
                occurred_at=item.received_at,
            ),
            sample={
                "order_item_id": item.id,
                "order_number": order.order_number,
                "product_id": item.product_id,
                "department_id": order.department_id,
                "quantity": float(quantity),
            },
        ))
    return planned


def _transfer_posting(order_item_id: int, product_id: int, source_id: int, target_id: int, order_number: str):
    """Balancing source-side posting for one order item, or (None, skip reason)."""
    target_net = _net_for_order_item(order_item_id, target_id, TARGET_NET_TYPES)
    if target_net == 0:
        return None, SKIP_ZERO_TARGET_NET
    existing_source_net = _net_for_order_item(order_item_id, source_id, SOURCE_NET_TYPES)
    delta = quantize(-target_net - existing_source_net)
    if delta == 0:
        return None, SKIP_ALREADY_SYNCED

    if delta < 0:
        tx_type = TX_TRANSFER_OUT
        note = f"Backfill issue from storage to department {target_id} for order {order_number}"
    else:
        tx_type = TX_TRANSFER_IN
        note = f"Backfill return to storage from department {target_id} for order {order_number}"
    posting = Posting(
        product_id=product_id,
        department_id=source_id,
        transaction_type=tx_type,
        quantity=delta,
        reference_type=REF_ORDER_RECEIVING,
        reference_id=str(order_item_id),
        notes=note,
    )
    return (posting, target_net, existing_source_net), None


def _plan_internal_transfers(summary: BackfillSummary, start, end) -> list[_PlannedItem]:
    rows = (
        _received_items(start, end)
        .join(ProductGroup, ProductGroup.id == Product.product_group_id)
        .filter(ProductGroup.is_internal.is_(True))
        .all()
    )
    summary.candidates = len(rows)

    planned = []
    for item, order, product in rows:
        target_id = order.department_id
        source_id, reason = resolve_source_department(product.product_group_id, target_id)
        if source_id is None:
            summary.skip(reason)
            continue
        if source_id == target_id:
            summary.skip(SKIP_SAME_DEPARTMENT)
            continue

        found, skip_reason = _transfer_posting(item.id, item.product_id, source_id, target_id, order.order_number)
        if found is None:
            summary.skip(skip_reason)
            continue
        posting, target_net, existing_source_net = found
        planned.append(_PlannedItem(
            order_item_id=item.id,
            posting=posting,
            sample={
                "order_item_id": item.id,
                "order_number": order.order_number,
                "product_id": item.product_id,
                "target_department_id": target_id,
                "source_department_id": source_id,
                "source_rule": reason,
                "target_net_quantity": float(target_net),
                "source_existing_net_quantity": float(existing_source_net),
                "source_delta_applied": float(posting.quantity),
                "transaction_type": posting.transaction_type,
            },
        ))
    return planned


def _run(job: str, planner, recheck, start, end, dry_run: bool, cancel_event) -> BackfillSummary:
    """
    Shared dry-run / execute driver.

    Execute: one transaction. Every key is locked in canonical order before
    the first write, each item is re-checked under the locks, and any item
    error or a cancellation rolls the whole run back.
    """
    summary = BackfillSummary(
        job=job,
        mode=MODE_DRY_RUN if dry_run else MODE_EXECUTE,
        start_date=start.isoformat() if start else None,
        end_date=end.isoformat() if end else None,
    )
    if start is not None and end is not None and start > end:
        raise ValidationError("start must be <= end")

    current_app.logger.info("Backfill %s started (%s, %s..%s)", job, summary.mode, start, end)

    if dry_run:
        for item in planner(summary, start, end):
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                break
            summary.patched += 1
            summary.sample(item.sample)
        return summary

    def _op() -> BackfillSummary:
        run_summary = BackfillSummary(
            job=summary.job,
            mode=summary.mode,
            start_date=summary.start_date,
            end_date=summary.end_date,
        )
        planned = planner(run_summary, start, end)
        balances = lock_keys(item.posting.key for item in planned)

        for item in planned:
            if cancel_event is not None and cancel_event.is_set():
                run_summary.cancelled = True
                break
            try:
                posting, reason = recheck(item)
                if posting is None:
                    run_summary.skip(reason)
                    continue
                append_locked(posting, balances[posting.key])
                run_summary.patched += 1
                run_summary.sample(dict(item.sample, quantity=float(posting.quantity)))
            except (LedgerError, ValueError) as exc:
                run_summary.errors += 1
                run_summary.sample({"order_item_id": item.order_item_id, "error": str(exc)})

        if run_summary.errors or run_summary.cancelled:
            db.session.rollback()
            run_summary.patched = 0
        else:
            db.session.commit()
        return run_summary

    try:
        result = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    if result.errors:
        current_app.logger.error("Backfill %s rolled back: %d item errors", job, result.errors)
        raise BackfillError(f"Backfill aborted due to {result.errors} item errors", result)
    if result.cancelled:
        current_app.logger.warning("Backfill %s cancelled; nothing committed", job)
    else:
        current_app.logger.info(
            "Backfill %s committed: candidates=%d patched=%d skipped=%s",
            job, result.candidates, result.patched, result.skipped,
        )
    return result


def backfill_receiving(start=None, end=None, dry_run: bool = True, cancel_event=None) -> BackfillSummary:
    """
    Post missing `receive` entries for received order items.

    Matched by reference order_receiving/<order_item id>; posts into the
    order's department with occurred_at = received_at. Skips zero quantities
    and non-countable products.
    """
    def _recheck(item: _PlannedItem):
        # Under the key lock: another run may have posted it meanwhile
        if _posted_order_items([item.order_item_id]):
            return None, SKIP_ALREADY_POSTED
        return item.posting, None

    return _run("receiving", _plan_receiving, _recheck, start, end, dry_run, cancel_event)


def backfill_internal_transfers(start=None, end=None, dry_run: bool = True, cancel_event=None) -> BackfillSummary:
    """
    Post the storage-side transfer that balances receipts of internal groups.

    For each receipt of an internal product group, the source (storage)
    department is resolved from the group's scope; the source must end up
    with net -target_net for the order item, so the posted delta is
    -target_net - existing_source_net.
    """
    def _recheck(item: _PlannedItem):
        sample = item.sample
        found, reason = _transfer_posting(
            item.order_item_id,
            item.posting.product_id,
            sample["source_department_id"],
            sample["target_department_id"],
            sample["order_number"],
        )
        if found is None:
            return None, reason
        return found[0], None

    return _run("internal_transfers", _plan_internal_transfers, _recheck, start, end, dry_run, cancel_event)
