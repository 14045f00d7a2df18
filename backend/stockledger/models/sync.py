from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow


SYNC_PROCESSING = "processing"
SYNC_COMPLETED = "completed"
SYNC_FAILED = "failed"
SYNC_CANCELLED = "cancelled"


class SalesSyncLog(db.Model):
    """One row per sales sync run (scheduled, manual or dry-run)."""
    __tablename__ = "sales_sync_logs"
    __table_args__ = (
        db.Index("ix_sales_sync_logs_started", "started_at"),
        db.CheckConstraint(
            "status IN ('processing', 'completed', 'failed', 'cancelled')",
            name="ck_sales_sync_logs_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    dry_run = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(16), nullable=False, default=SYNC_PROCESSING)

    planned_deductions = db.Column(db.Integer, nullable=False, default=0)
    applied_deductions = db.Column(db.Integer, nullable=False, default=0)
    skipped_existing = db.Column(db.Integer, nullable=False, default=0)

    error_message = db.Column(db.Text, nullable=True)
    triggered_by = db.Column(db.Integer, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "branch_id": self.branch_id,
            "dry_run": self.dry_run,
            "status": self.status,
            "planned_deductions": self.planned_deductions,
            "applied_deductions": self.applied_deductions,
            "skipped_existing": self.skipped_existing,
            "error_message": self.error_message,
            "triggered_by": self.triggered_by,
            "started_at": to_utc_z(self.started_at),
            "finished_at": to_utc_z(self.finished_at),
        }
