from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow


# Ledger quantities are stored with three decimal places
QUANTITY_EXPONENT = Decimal("0.001")

TX_RECEIVE = "receive"
TX_SALE = "sale"
TX_ADJUSTMENT = "adjustment"
TX_TRANSFER_IN = "transfer_in"
TX_TRANSFER_OUT = "transfer_out"
TX_INITIAL = "initial"
TX_PRODUCTION_IN = "production_transform_in"
TX_PRODUCTION_OUT = "production_transform_out"

TRANSACTION_TYPES = (
    TX_RECEIVE,
    TX_SALE,
    TX_ADJUSTMENT,
    TX_TRANSFER_IN,
    TX_TRANSFER_OUT,
    TX_INITIAL,
    TX_PRODUCTION_IN,
    TX_PRODUCTION_OUT,
)

# reference_type values written by the engine itself
REF_MANUAL = "manual"
REF_RECIPE_SALE = "recipe_sale"
REF_STOCK_CHECK = "stock_check"
REF_PRODUCTION = "production_transform"
REF_ORDER_RECEIVING = "order_receiving"


def _num(value):
    return float(value) if value is not None else None


class InventoryTransaction(db.Model):
    """
    One immutable, signed stock movement for a (product, department).

    INVARIANT: balance_after == balance_before + quantity on every row, and
    rows for a key chain together in id order (each balance_before equals the
    previous row's balance_after). Rows are appended only through
    ledger_service; corrections are new rows.

    occurred_at is business time (bill time, receive time); created_at is
    system time. The balance chain follows commit order (id), not occurred_at.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_invtx_product_dept_id", "product_id", "department_id", "id"),
        db.Index("ix_invtx_reference", "reference_type", "reference_id"),
        db.Index("ix_invtx_type_occurred", "transaction_type", "occurred_at"),
        db.CheckConstraint(
            "transaction_type IN ('receive', 'sale', 'adjustment', 'transfer_in', 'transfer_out', "
            "'initial', 'production_transform_in', 'production_transform_out')",
            name="ck_invtx_transaction_type",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(32), nullable=False)

    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    balance_before = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    balance_after = db.Column(db.Numeric(14, 3), nullable=False)

    reference_type = db.Column(db.String(50), nullable=True)
    reference_id = db.Column(db.String(160), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    # Nullable: backfills and scheduled syncs have no actor
    created_by = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=db.func.now(),
    )

    product = db.relationship("Product")
    department = db.relationship("Department")

    @property
    def key(self) -> tuple[int, int]:
        return (self.product_id, self.department_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "department_id": self.department_id,
            "transaction_type": self.transaction_type,
            "quantity": _num(self.quantity),
            "balance_before": _num(self.balance_before),
            "balance_after": _num(self.balance_after),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "notes": self.notes,
            "created_by": self.created_by,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class InventoryBalance(db.Model):
    """
    Materialized current quantity per (product, department).

    A cache of the ledger: quantity always equals balance_after of the
    latest InventoryTransaction for the key. The row doubles as the lock
    target that linearizes writers for the key.
    """
    __tablename__ = "inventory_balance"
    __table_args__ = (
        db.UniqueConstraint("product_id", "department_id", name="uk_product_dept"),
        db.Index("ix_inventory_balance_dept", "department_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=False)

    quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    # Plain integer: sale deletion removes rows this may point at
    last_transaction_id = db.Column(db.Integer, nullable=True)
    last_updated = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product")
    department = db.relationship("Department")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "department_id": self.department_id,
            "quantity": _num(self.quantity),
            "last_transaction_id": self.last_transaction_id,
            "last_updated": to_utc_z(self.last_updated),
        }


class ReferenceSequence(db.Model):
    """
    Atomic per-department counters for generated reference ids.

    WHY: Two production transforms started in the same second in the same
    department must still get distinct reference ids.
    """
    __tablename__ = "reference_sequences"
    __table_args__ = (
        db.UniqueConstraint("department_id", "kind", name="uq_reference_sequences_dept_kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=False, index=True)
    kind = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
