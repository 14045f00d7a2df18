from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class UnitConversion(db.Model):
    """
    Directed conversion edge: 1 from_unit == multiplier to_unit.

    Paths may compose several edges (kg -> g -> tsp). The resolver also
    walks an edge backwards (dividing) when the opposite direction is not
    declared.
    """
    __tablename__ = "unit_conversions"
    __table_args__ = (
        db.UniqueConstraint("from_unit_id", "to_unit_id", name="uq_unit_conversions_pair"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    from_unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False, index=True)
    to_unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False, index=True)
    multiplier = db.Column(db.Numeric(16, 6), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_unit_id": self.from_unit_id,
            "to_unit_id": self.to_unit_id,
            "multiplier": float(self.multiplier),
        }


class MenuRecipe(db.Model):
    """A sold menu item, keyed by the POS barcode the analytics feed reports."""
    __tablename__ = "menu_recipes"
    __table_args__ = (
        db.UniqueConstraint("menu_barcode", name="uq_menu_recipes_barcode"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    menu_barcode = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship(
        "MenuRecipeItem",
        backref="recipe",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="MenuRecipeItem.id",
    )

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "menu_barcode": self.menu_barcode,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class MenuRecipeItem(db.Model):
    """
    One BOM row: quantity of product consumed per ONE sold menu unit.

    unit_id is the unit the recipe is written in; it is converted to the
    product's inventory unit at expansion time.
    """
    __tablename__ = "menu_recipe_items"
    __table_args__ = (
        db.Index("ix_menu_recipe_items_recipe", "recipe_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    recipe_id = db.Column(db.Integer, db.ForeignKey("menu_recipes.id", ondelete="CASCADE"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=True)
    quantity = db.Column(db.Numeric(14, 4), nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipe_id": self.recipe_id,
            "product_id": self.product_id,
            "unit_id": self.unit_id,
            "quantity": float(self.quantity),
        }
