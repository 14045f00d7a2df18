from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class Order(db.Model):
    """Purchase order raised by a department. Read-only for the ledger."""
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=False, index=True)
    order_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    department = db.relationship("Department")
    items = db.relationship("OrderItem", backref="order", lazy=True, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "department_id": self.department_id,
            "order_date": self.order_date.isoformat() if self.order_date else None,
            "created_at": to_utc_z(self.created_at),
        }


class OrderItem(db.Model):
    """
    One ordered product line.

    A line is a receiving event once received_at is set. Receiving is what
    the receiving backfill turns into `receive` ledger entries, keyed by
    reference_type 'order_receiving' and reference_id = str(order_item.id).
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.Index("ix_order_items_received_at", "received_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    received_quantity = db.Column(db.Numeric(14, 3), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_by_user_id = db.Column(db.Integer, nullable=True)
    receive_notes = db.Column(db.Text, nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": float(self.quantity or 0),
            "received_quantity": float(self.received_quantity) if self.received_quantity is not None else None,
            "received_at": to_utc_z(self.received_at),
            "received_by_user_id": self.received_by_user_id,
            "receive_notes": self.receive_notes,
        }
