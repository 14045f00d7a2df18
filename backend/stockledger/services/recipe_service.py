# Overview: Service-layer recipe expansion; turns sold menu items into raw
# material usage in each ingredient's inventory unit.

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

from sqlalchemy import case, func
from sqlalchemy.orm import selectinload

from ..extensions import db
from ..models import Branch, Department, InventoryTransaction, MenuRecipe, MenuRecipeItem, Product
from ..models.inventory import TX_PRODUCTION_OUT, TX_SALE
from stockledger.time_utils import business_day_bounds
from .analytics_client import default_source
from .ledger_service import quantize
from .unit_conversion_service import MissingConversion, UnitConversionResolver


class RecipeError(Exception):
    """Raised when a recipe operation cannot be performed."""
    pass


@dataclass(frozen=True)
class IngredientUsage:
    product_id: int
    unit_id: int | None
    quantity: Decimal


@dataclass(frozen=True)
class MissingConversionItem:
    product_id: int
    from_unit_id: int | None
    to_unit_id: int | None
    quantity: Decimal
    menu_barcode: str

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "from_unit_id": self.from_unit_id,
            "to_unit_id": self.to_unit_id,
            "quantity": float(self.quantity),
            "menu_barcode": self.menu_barcode,
        }


@dataclass
class ExpansionResult:
    menu_barcode: str
    sold_quantity: Decimal
    recipe_found: bool = True
    ingredients: list = field(default_factory=list)
    missing_conversions: list = field(default_factory=list)


@dataclass
class SalesExpansion:
    expected_usage: dict = field(default_factory=dict)
    menu_breakdown: dict = field(default_factory=dict)
    missing_recipes: list = field(default_factory=list)
    missing_conversions: list = field(default_factory=list)


class RecipeBook:
    """
    Recipes (with items and ingredient inventory units) loaded once per batch.

    Only active recipes with at least one item count as a recipe.
    """

    def __init__(self, recipes: Iterable[MenuRecipe]):
        self._items: dict[str, list[tuple[int, int | None, int | None, Decimal]]] = {}
        for recipe in recipes:
            rows = []
            for item in recipe.items:
                product_unit_id = item.product.unit_id if item.product is not None else None
                rows.append((item.product_id, item.unit_id, product_unit_id, Decimal(str(item.quantity))))
            if rows:
                self._items[recipe.menu_barcode] = rows

    @classmethod
    def load(cls, barcodes: Iterable[str] | None = None) -> "RecipeBook":
        query = (
            db.session.query(MenuRecipe)
            .options(selectinload(MenuRecipe.items).selectinload(MenuRecipeItem.product))
            .filter(MenuRecipe.is_active.is_(True))
        )
        if barcodes is not None:
            barcodes = list(set(barcodes))
            if not barcodes:
                return cls([])
            query = query.filter(MenuRecipe.menu_barcode.in_(barcodes))
        return cls(query.all())

    def items_for(self, menu_barcode: str):
        return self._items.get(menu_barcode)


def expand(
    menu_barcode: str,
    sold_quantity,
    resolver: UnitConversionResolver | None = None,
    *,
    book: RecipeBook | None = None,
) -> ExpansionResult:
    """
    Raw material usage for sold_quantity units of one menu item.

    A missing unit conversion drops only that ingredient (reported in
    missing_conversions); the rest of the recipe still expands.
    """
    sold_quantity = Decimal(str(sold_quantity))
    resolver = resolver or UnitConversionResolver.load()
    book = book or RecipeBook.load([menu_barcode])

    result = ExpansionResult(menu_barcode=menu_barcode, sold_quantity=sold_quantity)
    items = book.items_for(menu_barcode)
    if not items:
        result.recipe_found = False
        return result

    for product_id, recipe_unit_id, inventory_unit_id, per_unit in items:
        used = per_unit * sold_quantity
        multiplier = resolver.resolve(recipe_unit_id, inventory_unit_id)
        if isinstance(multiplier, MissingConversion):
            result.missing_conversions.append(
                MissingConversionItem(
                    product_id=product_id,
                    from_unit_id=recipe_unit_id,
                    to_unit_id=inventory_unit_id,
                    quantity=used,
                    menu_barcode=menu_barcode,
                )
            )
            continue
        result.ingredients.append(
            IngredientUsage(product_id=product_id, unit_id=inventory_unit_id, quantity=used * multiplier)
        )
    return result


def expand_sales(
    lines: Iterable[tuple[str, Decimal]],
    resolver: UnitConversionResolver | None = None,
    *,
    book: RecipeBook | None = None,
) -> SalesExpansion:
    """
    Sum expected usage per ingredient over (menu_barcode, quantity) pairs.

    Sales of the same menu item are merged first, so each missing recipe or
    conversion is reported once per menu item with the total quantity.
    """
    sold: dict[str, Decimal] = defaultdict(Decimal)
    for barcode, quantity in lines:
        sold[barcode] += Decimal(str(quantity))

    resolver = resolver or UnitConversionResolver.load()
    book = book or RecipeBook.load(sold.keys())

    summary = SalesExpansion()
    usage: dict[int, Decimal] = defaultdict(Decimal)
    breakdown: dict[int, dict[str, Decimal]] = defaultdict(lambda: defaultdict(Decimal))

    for barcode in sorted(sold):
        expansion = expand(barcode, sold[barcode], resolver, book=book)
        if not expansion.recipe_found:
            summary.missing_recipes.append({"menu_barcode": barcode, "quantity": float(sold[barcode])})
            continue
        summary.missing_conversions.extend(expansion.missing_conversions)
        for ingredient in expansion.ingredients:
            usage[ingredient.product_id] += ingredient.quantity
            breakdown[ingredient.product_id][barcode] += ingredient.quantity

    summary.expected_usage = dict(usage)
    summary.menu_breakdown = {pid: dict(menus) for pid, menus in breakdown.items()}
    return summary


def actual_usage(lower, upper, branch_id: int | None = None) -> dict[int, Decimal]:
    """
    Ledger-derived consumption per product in [lower, upper) (UTC occurred_at).

    Counts outflows of type sale and production_transform_out.
    """
    used = func.sum(
        case(
            (InventoryTransaction.quantity < 0, -InventoryTransaction.quantity),
            else_=0,
        )
    )
    query = (
        db.session.query(InventoryTransaction.product_id, used)
        .filter(
            InventoryTransaction.transaction_type.in_((TX_SALE, TX_PRODUCTION_OUT)),
            InventoryTransaction.occurred_at >= lower,
            InventoryTransaction.occurred_at < upper,
        )
    )
    if branch_id is not None:
        query = query.join(Department, Department.id == InventoryTransaction.department_id).filter(
            Department.branch_id == branch_id
        )
    rows = query.group_by(InventoryTransaction.product_id).all()
    return {product_id: quantize(total or 0) for product_id, total in rows}


def usage_report(
    start: date,
    end: date,
    branch_id: int | None = None,
    *,
    source=None,
    offset_hours: int = 0,
) -> dict:
    """
    Expected (recipe-based) vs actual (ledger-based) usage per ingredient.

    source is an analytics source (fetch_sale_lines), defaulting to the
    configured client. When branch_id is given only that branch's analytics
    code is queried.
    """
    if start > end:
        raise RecipeError("start must be <= end")

    branch_codes = None
    if branch_id is not None:
        branch = db.session.get(Branch, branch_id)
        if branch is None:
            raise RecipeError("branch not found")
        if not branch.analytics_branch_code:
            raise RecipeError("Branch is missing analytics branch code")
        branch_codes = [branch.analytics_branch_code]

    source = source or default_source()
    lines = source.fetch_sale_lines(start, end, branch_codes)
    expansion = expand_sales((line.menu_barcode, line.quantity) for line in lines)

    lower, upper = business_day_bounds(start, end, offset_hours)
    actual = actual_usage(lower, upper, branch_id)

    product_ids = set(expansion.expected_usage)
    names = {
        p.id: p.name
        for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
    } if product_ids else {}

    items = []
    expected_total = Decimal("0")
    actual_total = Decimal("0")
    for product_id in sorted(product_ids):
        expected = expansion.expected_usage[product_id]
        used = actual.get(product_id, Decimal("0"))
        expected_total += expected
        actual_total += used
        items.append({
            "product_id": product_id,
            "product_name": names.get(product_id),
            "expected_used": float(expected),
            "actual_used": float(used),
            "usage_variance": float(used - expected),
            "menu_breakdown": [
                {"menu_barcode": barcode, "expected_used": float(qty)}
                for barcode, qty in sorted(expansion.menu_breakdown.get(product_id, {}).items())
            ],
        })

    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "branch_id": branch_id,
        "items": items,
        "summary": {
            "expected_total_used": float(expected_total),
            "actual_total_used": float(actual_total),
            "variance_total": float(actual_total - expected_total),
        },
        "missing_recipes": expansion.missing_recipes,
        "missing_conversions": [m.to_dict() for m in expansion.missing_conversions],
    }
