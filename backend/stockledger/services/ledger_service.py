# Overview: Service-layer operations for the inventory ledger; appends signed
# movements and keeps the per-(product, department) balance in step with them.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Department, InventoryBalance, InventoryTransaction, Product
from ..models.inventory import (
    QUANTITY_EXPONENT,
    REF_MANUAL,
    TRANSACTION_TYPES,
    TX_INITIAL,
    TX_PRODUCTION_OUT,
    TX_SALE,
    TX_TRANSFER_OUT,
)
from ..validation import ValidationError, enforce_rules_movement
from stockledger.time_utils import business_day_bounds, utcnow
from .concurrency import lock_for_update, run_with_retry

"""
Ledger invariants (authoritative)

- Every row: balance_after == balance_before + quantity (3 decimal places).
- Per key (product_id, department_id), rows chain in id order:
  row[n].balance_before == row[n-1].balance_after, the first row starts at 0.
- InventoryBalance.quantity == balance_after of the key's latest row.
- Writers for a key are linearized by locking the key's balance row for the
  whole read-modify-write. Multi-key writers lock in ascending
  (product_id, department_id) order.
- Rows are never updated or deleted, except by delete_sale_movements.
- The ledger does not check signs; callers own the sign convention.
"""

# Outflow types the negative-balance guard applies to
GUARDED_OUTFLOWS = frozenset({TX_SALE, TX_PRODUCTION_OUT, TX_TRANSFER_OUT})

MAX_MOVEMENTS_LIMIT = 1000


class LedgerError(Exception):
    """Raised when a ledger operation cannot be performed."""
    pass


class LedgerInvariantError(LedgerError):
    """Balance arithmetic or chain mismatch; a defect, never a data problem."""
    pass


class InsufficientStockError(LedgerError):
    """Raised when a guarded outflow would drive a balance below zero."""

    def __init__(self, product_id: int, department_id: int, available: Decimal, requested: Decimal):
        self.product_id = product_id
        self.department_id = department_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"insufficient stock for product {product_id} in department {department_id}: "
            f"available {available}, requested {requested}"
        )


@dataclass(frozen=True)
class Posting:
    product_id: int
    department_id: int
    transaction_type: str
    quantity: Decimal
    reference_type: str | None = None
    reference_id: str | None = None
    notes: str | None = None
    created_by: int | None = None
    occurred_at: datetime | None = None

    @property
    def key(self) -> tuple[int, int]:
        return (self.product_id, self.department_id)


@dataclass
class LedgerBatchResult:
    entries: list = field(default_factory=list)
    skipped: list = field(default_factory=list)


@dataclass
class LedgerVerification:
    keys_checked: int = 0
    entries_checked: int = 0
    issues: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "keys_checked": self.keys_checked,
            "entries_checked": self.entries_checked,
            "issues": self.issues,
        }


def quantize(value) -> Decimal:
    """Normalize a quantity to the ledger's 3 decimal places."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(QUANTITY_EXPONENT, rounding=ROUND_HALF_UP)


def negative_guard_enabled() -> bool:
    """Configured policy for manual outflows and production transforms."""
    return current_app.config.get("NEGATIVE_BALANCE_POLICY", "allow").strip().lower() == "reject"


# =============================================================================
# Key locking
# =============================================================================

def _touch_balance(product_id: int, department_id: int) -> None:
    """
    Write-touch the key's balance row, inserting it at 0 when missing.

    The no-op UPDATE takes the row lock on PostgreSQL/MySQL and the database
    write lock on SQLite, where SELECT ... FOR UPDATE is ignored.
    """
    stmt = (
        update(InventoryBalance)
        .where(
            InventoryBalance.product_id == product_id,
            InventoryBalance.department_id == department_id,
        )
        .values(
            quantity=InventoryBalance.quantity,
            last_updated=InventoryBalance.last_updated,
        )
    )
    result = db.session.execute(stmt)
    if result.rowcount:
        return

    balance = InventoryBalance(
        product_id=product_id,
        department_id=department_id,
        quantity=Decimal("0"),
    )
    try:
        with db.session.begin_nested():
            db.session.add(balance)
    except IntegrityError:
        # Lost the insert race; the row exists now, lock it
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise


def lock_balance(product_id: int, department_id: int) -> InventoryBalance:
    """Lock one key for the rest of the current transaction and return its balance row."""
    _touch_balance(product_id, department_id)
    query = db.session.query(InventoryBalance).filter_by(
        product_id=product_id,
        department_id=department_id,
    )
    return lock_for_update(query).populate_existing().one()


def lock_keys(keys) -> dict[tuple[int, int], InventoryBalance]:
    """Lock every key in canonical ascending (product_id, department_id) order."""
    locked = {}
    for product_id, department_id in sorted(set(keys)):
        locked[(product_id, department_id)] = lock_balance(product_id, department_id)
    return locked


def _check_invariant(entry: InventoryTransaction, balance: InventoryBalance) -> None:
    if entry.balance_after != entry.balance_before + entry.quantity:
        raise LedgerInvariantError(
            f"balance_after {entry.balance_after} != balance_before {entry.balance_before} "
            f"+ quantity {entry.quantity} (product {entry.product_id}, department {entry.department_id})"
        )
    if (balance.product_id, balance.department_id) != (entry.product_id, entry.department_id):
        raise LedgerInvariantError("balance row does not belong to the posted key")


def _find_reference(posting: Posting) -> bool:
    return (
        db.session.query(InventoryTransaction.id)
        .filter(
            InventoryTransaction.reference_type == posting.reference_type,
            InventoryTransaction.reference_id == posting.reference_id,
            InventoryTransaction.product_id == posting.product_id,
            InventoryTransaction.department_id == posting.department_id,
        )
        .first()
        is not None
    )


# =============================================================================
# Writes
# =============================================================================

def append_locked(
    posting: Posting,
    balance: InventoryBalance,
    *,
    guard_negative: bool = False,
) -> InventoryTransaction:
    """
    Append one entry for a key whose balance row the caller already holds locked.

    Building block for post_batch and for multi-step jobs that lock a whole
    key set up-front. Does not commit.
    """
    if posting.transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction_type: {posting.transaction_type}")

    quantity = quantize(posting.quantity)
    before = quantize(balance.quantity or 0)
    after = quantize(before + quantity)

    if guard_negative and posting.transaction_type in GUARDED_OUTFLOWS and after < 0:
        raise InsufficientStockError(posting.product_id, posting.department_id, before, -quantity)

    entry = InventoryTransaction(
        product_id=posting.product_id,
        department_id=posting.department_id,
        transaction_type=posting.transaction_type,
        quantity=quantity,
        balance_before=before,
        balance_after=after,
        reference_type=posting.reference_type,
        reference_id=posting.reference_id,
        notes=posting.notes,
        created_by=posting.created_by,
        occurred_at=posting.occurred_at or utcnow(),
    )
    _check_invariant(entry, balance)

    db.session.add(entry)
    db.session.flush()

    balance.quantity = after
    balance.last_transaction_id = entry.id
    balance.last_updated = utcnow()
    return entry


def post_batch(
    postings,
    *,
    idempotent: bool = False,
    guard_negative: bool = False,
    commit: bool = True,
) -> LedgerBatchResult:
    """
    Post a set of movements atomically (all-or-nothing).

    All keys are locked up-front in canonical order; entries are then appended
    in the order given. With idempotent=True a posting whose
    (reference_type, reference_id, product_id, department_id) already exists
    is skipped; the check runs under the key lock.

    commit=False leaves the transaction to the caller (no retry wrapper then,
    since a retry would roll back the caller's work).
    """
    postings = list(postings)

    def _op() -> LedgerBatchResult:
        result = LedgerBatchResult()
        if not postings:
            return result

        balances = lock_keys(p.key for p in postings)
        seen = set()
        for posting in postings:
            if idempotent and posting.reference_id is not None:
                ref_key = (posting.reference_type, posting.reference_id, posting.product_id, posting.department_id)
                if ref_key in seen or _find_reference(posting):
                    result.skipped.append(posting)
                    continue
                seen.add(ref_key)
            entry = append_locked(posting, balances[posting.key], guard_negative=guard_negative)
            result.entries.append(entry)

        if commit:
            db.session.commit()
        return result

    if not commit:
        return _op()

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


def post(
    product_id: int,
    department_id: int,
    transaction_type: str,
    quantity,
    reference_type: str | None = None,
    reference_id: str | None = None,
    notes: str | None = None,
    actor: int | None = None,
    *,
    occurred_at: datetime | None = None,
    idempotent: bool = False,
    guard_negative: bool = False,
    commit: bool = True,
) -> InventoryTransaction | None:
    """
    Post one movement: lock key, read balance, append entry, update balance.

    Returns None only when idempotent=True and the reference was already posted.
    """
    posting = Posting(
        product_id=product_id,
        department_id=department_id,
        transaction_type=transaction_type,
        quantity=quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        created_by=actor,
        occurred_at=occurred_at,
    )
    result = post_batch([posting], idempotent=idempotent, guard_negative=guard_negative, commit=commit)
    return result.entries[0] if result.entries else None


def _require_active_key(product_id: int, department_id: int) -> tuple[Product, Department]:
    product = db.session.get(Product, product_id)
    if product is None:
        raise LedgerError("product not found")
    if not product.is_active:
        raise LedgerError("product is inactive")
    department = db.session.get(Department, department_id)
    if department is None:
        raise LedgerError("department not found")
    if not department.is_active:
        raise LedgerError("department is inactive")
    return product, department


def post_manual_movement(
    product_id: int,
    department_id: int,
    transaction_type: str,
    quantity,
    *,
    notes: str | None = None,
    actor: int | None = None,
    occurred_at: datetime | None = None,
    reference_id: str | None = None,
) -> InventoryTransaction:
    """
    Caller-facing manual entry (receive, waste/sale, transfer, adjustment).

    Enforces the sign convention and the configured negative-balance policy.
    """
    quantity = quantize(quantity)
    enforce_rules_movement(transaction_type, quantity)
    _require_active_key(product_id, department_id)

    entry = post(
        product_id,
        department_id,
        transaction_type,
        quantity,
        reference_type=REF_MANUAL,
        reference_id=reference_id,
        notes=notes,
        actor=actor,
        occurred_at=occurred_at,
        guard_negative=negative_guard_enabled(),
    )
    current_app.logger.info(
        "Manual %s posted: product=%s department=%s quantity=%s entry=%s",
        transaction_type, product_id, department_id, quantity, entry.id,
    )
    return entry


def initialize_balance(product_id: int, department_id: int, quantity, actor: int | None = None) -> InventoryTransaction:
    """Opening balance for a key that has no movements yet."""
    quantity = quantize(quantity)
    if quantity < 0:
        raise ValidationError("opening quantity must be >= 0")
    _require_active_key(product_id, department_id)

    def _op() -> InventoryTransaction:
        balance = lock_balance(product_id, department_id)
        if last_entry_id(product_id, department_id) is not None:
            raise LedgerError("key already has movements; post an adjustment instead")
        entry = append_locked(
            Posting(
                product_id=product_id,
                department_id=department_id,
                transaction_type=TX_INITIAL,
                quantity=quantity,
                reference_type=REF_MANUAL,
                notes="opening balance",
                created_by=actor,
            ),
            balance,
        )
        db.session.commit()
        return entry

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


# =============================================================================
# Reads
# =============================================================================

def get_balance(product_id: int, department_id: int) -> Decimal:
    row = db.session.query(InventoryBalance.quantity).filter_by(
        product_id=product_id,
        department_id=department_id,
    ).scalar()
    return quantize(row or 0)


def list_balances(
    *,
    department_id: int | None = None,
    branch_id: int | None = None,
    product_id: int | None = None,
) -> list[InventoryBalance]:
    query = db.session.query(InventoryBalance)
    if department_id is not None:
        query = query.filter(InventoryBalance.department_id == department_id)
    if product_id is not None:
        query = query.filter(InventoryBalance.product_id == product_id)
    if branch_id is not None:
        query = query.join(Department, Department.id == InventoryBalance.department_id).filter(
            Department.branch_id == branch_id
        )
    return query.order_by(InventoryBalance.department_id.asc(), InventoryBalance.product_id.asc()).all()


def last_entry_id(product_id: int, department_id: int) -> int | None:
    return (
        db.session.query(func.max(InventoryTransaction.id))
        .filter(
            InventoryTransaction.product_id == product_id,
            InventoryTransaction.department_id == department_id,
        )
        .scalar()
    )


def balance_as_of(product_id: int, department_id: int, cursor_id: int | None) -> Decimal:
    """
    Balance implied by the ledger up to and including entry cursor_id.

    A None cursor means "before the first entry" (0).
    """
    if cursor_id is None:
        return Decimal("0.000")
    after = (
        db.session.query(InventoryTransaction.balance_after)
        .filter(
            InventoryTransaction.product_id == product_id,
            InventoryTransaction.department_id == department_id,
            InventoryTransaction.id <= cursor_id,
        )
        .order_by(InventoryTransaction.id.desc())
        .limit(1)
        .scalar()
    )
    return quantize(after or 0)


def reference_exists(
    reference_type: str,
    reference_id: str,
    product_id: int | None = None,
    department_id: int | None = None,
) -> bool:
    query = db.session.query(InventoryTransaction.id).filter(
        InventoryTransaction.reference_type == reference_type,
        InventoryTransaction.reference_id == reference_id,
    )
    if product_id is not None:
        query = query.filter(InventoryTransaction.product_id == product_id)
    if department_id is not None:
        query = query.filter(InventoryTransaction.department_id == department_id)
    return query.first() is not None


def get_stock_card(
    product_id: int,
    department_id: int,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    """
    Movement history for one key in chain order.

    start is inclusive, end is exclusive (both on occurred_at, UTC-naive).
    """
    query = db.session.query(InventoryTransaction).filter(
        InventoryTransaction.product_id == product_id,
        InventoryTransaction.department_id == department_id,
    )
    if start is not None:
        query = query.filter(InventoryTransaction.occurred_at >= start)
    if end is not None:
        query = query.filter(InventoryTransaction.occurred_at < end)
    entries = query.order_by(InventoryTransaction.id.asc()).all()

    inflow = sum((e.quantity for e in entries if e.quantity > 0), Decimal("0"))
    outflow = sum((e.quantity for e in entries if e.quantity < 0), Decimal("0"))

    return {
        "product_id": product_id,
        "department_id": department_id,
        "opening_balance": float(entries[0].balance_before) if entries else None,
        "closing_balance": float(entries[-1].balance_after) if entries else None,
        "current_balance": float(get_balance(product_id, department_id)),
        "total_in": float(inflow),
        "total_out": float(-outflow),
        "entries": [e.to_dict() for e in entries],
    }


def list_movements(
    *,
    product_id: int | None = None,
    department_id: int | None = None,
    transaction_type: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[InventoryTransaction], int]:
    query = db.session.query(InventoryTransaction)
    if product_id is not None:
        query = query.filter(InventoryTransaction.product_id == product_id)
    if department_id is not None:
        query = query.filter(InventoryTransaction.department_id == department_id)
    if transaction_type:
        query = query.filter(InventoryTransaction.transaction_type == transaction_type)
    if reference_type:
        query = query.filter(InventoryTransaction.reference_type == reference_type)
    if reference_id:
        query = query.filter(InventoryTransaction.reference_id == reference_id)
    if start is not None:
        query = query.filter(InventoryTransaction.occurred_at >= start)
    if end is not None:
        query = query.filter(InventoryTransaction.occurred_at < end)

    total = query.count()

    if offset < 0:
        offset = 0
    if limit < 1:
        limit = 1
    if limit > MAX_MOVEMENTS_LIMIT:
        limit = MAX_MOVEMENTS_LIMIT

    rows = query.order_by(InventoryTransaction.id.desc()).offset(offset).limit(limit).all()
    return rows, total


# =============================================================================
# Verification / repair
# =============================================================================

def _entries_by_key(product_id: int | None, department_id: int | None):
    query = db.session.query(InventoryTransaction)
    if product_id is not None:
        query = query.filter(InventoryTransaction.product_id == product_id)
    if department_id is not None:
        query = query.filter(InventoryTransaction.department_id == department_id)
    query = query.order_by(
        InventoryTransaction.product_id.asc(),
        InventoryTransaction.department_id.asc(),
        InventoryTransaction.id.asc(),
    )

    current_key = None
    bucket = []
    for entry in query.yield_per(500):
        if entry.key != current_key:
            if bucket:
                yield current_key, bucket
            current_key, bucket = entry.key, []
        bucket.append(entry)
    if bucket:
        yield current_key, bucket


def verify_ledger(product_id: int | None = None, department_id: int | None = None) -> LedgerVerification:
    """
    Replay the ledger per key and report chain breaks and balance drift.

    Read-only. Issues carry enough context to locate the offending row.
    """
    report = LedgerVerification()
    last_after: dict[tuple[int, int], tuple[Decimal, int]] = {}

    for key, entries in _entries_by_key(product_id, department_id):
        report.keys_checked += 1
        running = Decimal("0.000")
        for entry in entries:
            report.entries_checked += 1
            if entry.balance_after != entry.balance_before + entry.quantity:
                report.issues.append({
                    "type": "arithmetic",
                    "entry_id": entry.id,
                    "product_id": key[0],
                    "department_id": key[1],
                    "balance_before": float(entry.balance_before),
                    "quantity": float(entry.quantity),
                    "balance_after": float(entry.balance_after),
                })
            if entry.balance_before != running:
                report.issues.append({
                    "type": "chain_break",
                    "entry_id": entry.id,
                    "product_id": key[0],
                    "department_id": key[1],
                    "expected_before": float(running),
                    "balance_before": float(entry.balance_before),
                })
            running = entry.balance_after
        last_after[key] = (running, entries[-1].id)

    balances = db.session.query(InventoryBalance)
    if product_id is not None:
        balances = balances.filter(InventoryBalance.product_id == product_id)
    if department_id is not None:
        balances = balances.filter(InventoryBalance.department_id == department_id)

    seen = set()
    for balance in balances.all():
        key = (balance.product_id, balance.department_id)
        seen.add(key)
        expected, _ = last_after.get(key, (Decimal("0.000"), None))
        if quantize(balance.quantity) != expected:
            report.issues.append({
                "type": "balance_drift",
                "product_id": key[0],
                "department_id": key[1],
                "balance": float(balance.quantity),
                "ledger": float(expected),
            })

    for key, (expected, _) in last_after.items():
        if key not in seen:
            report.issues.append({
                "type": "missing_balance",
                "product_id": key[0],
                "department_id": key[1],
                "ledger": float(expected),
            })

    return report


def rebuild_balances(product_id: int | None = None, department_id: int | None = None) -> dict:
    """
    Repair balance rows from the ledger (quantity = latest balance_after).

    Does not rewrite ledger rows; chain breaks stay visible to verify_ledger.
    """
    def _op() -> dict:
        latest = {key: entries[-1] for key, entries in _entries_by_key(product_id, department_id)}

        query = db.session.query(InventoryBalance.product_id, InventoryBalance.department_id)
        if product_id is not None:
            query = query.filter(InventoryBalance.product_id == product_id)
        if department_id is not None:
            query = query.filter(InventoryBalance.department_id == department_id)
        keys = set(latest) | {tuple(row) for row in query.all()}

        balances = lock_keys(keys)
        repaired = []
        for key, balance in balances.items():
            entry = latest.get(key)
            expected = quantize(entry.balance_after) if entry else Decimal("0.000")
            expected_last = entry.id if entry else None
            if quantize(balance.quantity or 0) != expected or balance.last_transaction_id != expected_last:
                repaired.append({
                    "product_id": key[0],
                    "department_id": key[1],
                    "previous": float(balance.quantity or 0),
                    "rebuilt": float(expected),
                })
                balance.quantity = expected
                balance.last_transaction_id = expected_last
                balance.last_updated = utcnow()

        db.session.commit()
        return {"keys_checked": len(balances), "repaired": repaired}

    try:
        summary = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "Rebuilt balances: %d keys checked, %d repaired",
        summary["keys_checked"], len(summary["repaired"]),
    )
    return summary


# =============================================================================
# Destructive reversal
# =============================================================================

def delete_sale_movements(
    start_date: date,
    end_date: date,
    department_id: int | None = None,
    actor: int | None = None,
) -> dict:
    """
    DANGEROUS admin escape hatch: remove `sale` entries for a business-date range.

    Affected keys are locked in canonical order; for each key the deleted
    rows are removed, every later row is re-chained (balance_before/after
    recomputed in id order) and the balance row is reset to the new tail.
    All in one transaction.
    """
    if start_date is None or end_date is None:
        raise ValidationError("start_date and end_date are required")
    if start_date > end_date:
        raise ValidationError("start_date must be <= end_date")

    lower, upper = business_day_bounds(start_date, end_date, current_app.config.get("ANALYTICS_TIME_OFFSET_HOURS", 0))

    def _candidates():
        query = db.session.query(InventoryTransaction).filter(
            InventoryTransaction.transaction_type == TX_SALE,
            InventoryTransaction.occurred_at >= lower,
            InventoryTransaction.occurred_at < upper,
        )
        if department_id is not None:
            query = query.filter(InventoryTransaction.department_id == department_id)
        return query

    def _op() -> dict:
        keys = {tuple(row) for row in _candidates().with_entities(
            InventoryTransaction.product_id, InventoryTransaction.department_id
        ).distinct().all()}
        balances = lock_keys(keys)

        per_key = []
        total_deleted = 0
        for key in sorted(balances):
            doomed = (
                _candidates()
                .filter(
                    InventoryTransaction.product_id == key[0],
                    InventoryTransaction.department_id == key[1],
                )
                .order_by(InventoryTransaction.id.asc())
                .all()
            )
            if not doomed:
                continue

            first_id = doomed[0].id
            doomed_ids = {e.id for e in doomed}
            restored = -sum((e.quantity for e in doomed), Decimal("0"))

            running = quantize(
                db.session.query(InventoryTransaction.balance_after)
                .filter(
                    InventoryTransaction.product_id == key[0],
                    InventoryTransaction.department_id == key[1],
                    InventoryTransaction.id < first_id,
                )
                .order_by(InventoryTransaction.id.desc())
                .limit(1)
                .scalar()
                or 0
            )

            for entry in doomed:
                db.session.delete(entry)
            db.session.flush()

            later = (
                db.session.query(InventoryTransaction)
                .filter(
                    InventoryTransaction.product_id == key[0],
                    InventoryTransaction.department_id == key[1],
                    InventoryTransaction.id > first_id,
                )
                .order_by(InventoryTransaction.id.asc())
                .all()
            )
            last_id = (
                db.session.query(func.max(InventoryTransaction.id))
                .filter(
                    InventoryTransaction.product_id == key[0],
                    InventoryTransaction.department_id == key[1],
                    InventoryTransaction.id < first_id,
                )
                .scalar()
            )
            for entry in later:
                if entry.id in doomed_ids:
                    continue
                entry.balance_before = running
                entry.balance_after = quantize(running + entry.quantity)
                running = entry.balance_after
                last_id = entry.id

            balance = balances[key]
            balance.quantity = running
            balance.last_transaction_id = last_id
            balance.last_updated = utcnow()

            total_deleted += len(doomed)
            per_key.append({
                "product_id": key[0],
                "department_id": key[1],
                "deleted": len(doomed),
                "quantity_restored": float(restored),
                "balance_after": float(running),
            })

        db.session.commit()
        return {"deleted": total_deleted, "keys": per_key}

    try:
        summary = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.warning(
        "Deleted %d sale movements for %s..%s (department=%s) by user %s",
        summary["deleted"], start_date, end_date, department_id, actor,
    )
    return summary
