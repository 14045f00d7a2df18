from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow


class StockCheck(db.Model):
    """
    Physical count of one product in one department on one business date.

    WHY: The variance of a count must be reproducible long after it was taken,
    so the row captures a ledger cursor when it is recorded:
      - ledger_cursor_id: id of the last ledger entry for the key at count time
        (NULL when the key had no entries yet)
      - system_quantity: balance_after at that cursor (0 when NULL cursor)

    One row per (product, department, check_date). Re-counting the same day
    overwrites counted_quantity and re-captures the cursor.
    """
    __tablename__ = "stock_checks"
    __table_args__ = (
        db.UniqueConstraint("product_id", "department_id", "check_date", name="uq_stock_checks_key_date"),
        db.Index("ix_stock_checks_dept_date", "department_id", "check_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    check_date = db.Column(db.Date, nullable=False)

    counted_quantity = db.Column(db.Numeric(14, 3), nullable=False)

    # Ledger cursor captured at count time
    ledger_cursor_id = db.Column(db.Integer, nullable=True)
    system_quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    counted_by = db.Column(db.Integer, nullable=True)
    checked_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")
    department = db.relationship("Department")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_id": self.department_id,
            "product_id": self.product_id,
            "check_date": self.check_date.isoformat() if self.check_date else None,
            "counted_quantity": float(self.counted_quantity),
            "ledger_cursor_id": self.ledger_cursor_id,
            "system_quantity": float(self.system_quantity),
            "counted_by": self.counted_by,
            "checked_at": to_utc_z(self.checked_at),
        }
