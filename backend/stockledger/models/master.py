from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class Branch(db.Model):
    """
    A restaurant/shop branch.

    analytics_branch_code is the branch id used by the external POS analytics
    store. Sales lines are mapped to a local branch through it; branches
    without a code are never synced.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("analytics_branch_code", name="uq_branches_analytics_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    analytics_branch_code = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "analytics_branch_code": self.analytics_branch_code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Department(db.Model):
    """A stock-holding department inside a branch (kitchen, bar, storage...)."""
    __tablename__ = "departments"
    __table_args__ = (
        db.Index("ix_departments_branch_active", "branch_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    branch = db.relationship("Branch", backref=db.backref("departments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "name": self.name,
            "is_active": self.is_active,
        }


class Unit(db.Model):
    __tablename__ = "units"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False)
    abbreviation = db.Column(db.String(16), nullable=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "abbreviation": self.abbreviation}


class ProductGroup(db.Model):
    """
    Product grouping (formerly "supplier").

    is_internal marks groups stocked from an internal storage department
    rather than bought straight into the ordering department. The storage
    department(s) are listed in ProductGroupInternalScope.
    """
    __tablename__ = "product_groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "is_internal": self.is_internal}


class ProductGroupInternalScope(db.Model):
    __tablename__ = "product_group_internal_scopes"
    __table_args__ = (
        db.UniqueConstraint("product_group_id", "department_id", name="uq_pg_scope_group_dept"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_group_id = db.Column(db.Integer, db.ForeignKey("product_groups.id"), nullable=False, index=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=False, index=True)

    department = db.relationship("Department")


class Product(db.Model):
    """
    Product master data (raw materials and finished goods alike).

    unit_id is the INVENTORY unit: every ledger quantity for the product is
    expressed in it, and recipe quantities are converted into it.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_products_code"),
        db.Index("ix_products_group", "product_group_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)

    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=True)
    product_group_id = db.Column(db.Integer, db.ForeignKey("product_groups.id"), nullable=True)

    default_price = db.Column(db.Numeric(12, 2), nullable=True)

    # Non-countable items (e.g. services, consumables) never enter the ledger via receiving
    is_countable = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    unit = db.relationship("Unit")
    product_group = db.relationship("ProductGroup")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "unit_id": self.unit_id,
            "product_group_id": self.product_group_id,
            "default_price": float(self.default_price) if self.default_price is not None else None,
            "is_countable": self.is_countable,
            "is_active": self.is_active,
        }
