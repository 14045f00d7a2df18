# Overview: Service-layer production transforms; consumes ingredient stock and
# produces one output product under a single shared reference.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Department, InventoryTransaction, Product
from ..models.inventory import REF_PRODUCTION, TX_PRODUCTION_IN, TX_PRODUCTION_OUT
from ..validation import ValidationError, parse_int, parse_quantity
from stockledger.time_utils import utcnow
from .concurrency import run_with_retry
from .sequence_service import next_reference_sequence
from .ledger_service import Posting, negative_guard_enabled, post_batch, quantize


PRODUCTION_SEQUENCE_KIND = "production"


class ProductionError(Exception):
    """Raised when a production transform is invalid."""
    pass


@dataclass
class TransformResult:
    reference_id: str
    output_entry: InventoryTransaction
    ingredient_entries: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "reference_id": self.reference_id,
            "output_entry": self.output_entry.to_dict(),
            "ingredient_entries": [e.to_dict() for e in self.ingredient_entries],
        }


def _merge_ingredients(ingredients) -> dict[int, Decimal]:
    merged: dict[int, Decimal] = {}
    for line in ingredients or []:
        product_id = parse_int(line.get("product_id"), "ingredient product_id")
        quantity = quantize(parse_quantity(line.get("quantity"), "ingredient quantity", positive=True))
        if quantity <= 0:
            raise ProductionError("ingredient quantity must be > 0")
        merged[product_id] = merged.get(product_id, Decimal("0")) + quantity
    return merged


def _validate(department_id: int, output_product_id: int, output_quantity: Decimal, merged: dict[int, Decimal]) -> None:
    if output_quantity <= 0:
        raise ProductionError("output quantity must be > 0")
    if not merged:
        raise ProductionError("At least one ingredient is required")
    if output_product_id in merged:
        raise ProductionError("output product cannot also be an ingredient")

    department = db.session.get(Department, department_id)
    if department is None:
        raise ProductionError("department not found")
    if not department.is_active:
        raise ProductionError("department is inactive")

    wanted = set(merged) | {output_product_id}
    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(list(wanted))).all()}
    for product_id in sorted(wanted):
        product = products.get(product_id)
        if product is None:
            raise ProductionError(f"product {product_id} not found")
        if not product.is_active:
            raise ProductionError(f"product {product_id} is inactive")


def transform(
    department_id: int,
    output_product_id: int,
    output_quantity,
    ingredients,
    notes: str | None = None,
    actor: int | None = None,
) -> TransformResult:
    """
    Convert ingredients into an output product, all-or-nothing.

    ingredients: [{"product_id": int, "quantity": number}, ...]; repeated
    products are merged. Posts one production_transform_out per ingredient
    and one production_transform_in for the output in a single post_batch;
    every row shares reference production:<UTC yyyymmddHHMMSS>:<dept>:<seq>.

    With NEGATIVE_BALANCE_POLICY=reject an ingredient short on stock fails
    the whole transform (InsufficientStockError).
    """
    try:
        output_quantity = quantize(parse_quantity(output_quantity, "output quantity"))
    except ValidationError as exc:
        raise ProductionError(str(exc))
    try:
        merged = _merge_ingredients(ingredients)
    except ValidationError as exc:
        raise ProductionError(str(exc))
    _validate(department_id, output_product_id, output_quantity, merged)

    guard = negative_guard_enabled()
    note_suffix = f": {notes}" if notes else ""

    def _op() -> TransformResult:
        seq = next_reference_sequence(department_id=department_id, kind=PRODUCTION_SEQUENCE_KIND)
        reference_id = f"production:{utcnow().strftime('%Y%m%d%H%M%S')}:{department_id}:{seq}"
        occurred_at = utcnow()

        postings = [
            Posting(
                product_id=product_id,
                department_id=department_id,
                transaction_type=TX_PRODUCTION_OUT,
                quantity=-quantity,
                reference_type=REF_PRODUCTION,
                reference_id=reference_id,
                notes=f"Production input for product {output_product_id}{note_suffix}",
                created_by=actor,
                occurred_at=occurred_at,
            )
            for product_id, quantity in sorted(merged.items())
        ]
        postings.append(
            Posting(
                product_id=output_product_id,
                department_id=department_id,
                transaction_type=TX_PRODUCTION_IN,
                quantity=output_quantity,
                reference_type=REF_PRODUCTION,
                reference_id=reference_id,
                notes=f"Production output{note_suffix}",
                created_by=actor,
                occurred_at=occurred_at,
            )
        )

        batch = post_batch(postings, guard_negative=guard, commit=False)
        db.session.commit()
        return TransformResult(
            reference_id=reference_id,
            output_entry=batch.entries[-1],
            ingredient_entries=batch.entries[:-1],
        )

    try:
        result = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "Production %s: %d ingredients -> product %s x %s in department %s",
        result.reference_id, len(result.ingredient_entries), output_product_id, output_quantity, department_id,
    )
    return result


def list_transforms(department_id: int | None = None, limit: int = 50) -> list[dict]:
    """Recent transforms, newest first, one item per reference."""
    limit = max(1, min(int(limit), 500))

    refs = db.session.query(
        InventoryTransaction.reference_id,
        func.max(InventoryTransaction.id).label("last_id"),
    ).filter(InventoryTransaction.reference_type == REF_PRODUCTION)
    if department_id is not None:
        refs = refs.filter(InventoryTransaction.department_id == department_id)
    refs = refs.group_by(InventoryTransaction.reference_id).order_by(func.max(InventoryTransaction.id).desc()).limit(limit).all()

    reference_ids = [r.reference_id for r in refs]
    if not reference_ids:
        return []

    entries = (
        db.session.query(InventoryTransaction)
        .filter(
            InventoryTransaction.reference_type == REF_PRODUCTION,
            InventoryTransaction.reference_id.in_(reference_ids),
        )
        .order_by(InventoryTransaction.id.asc())
        .all()
    )
    grouped: dict[str, list[InventoryTransaction]] = {ref: [] for ref in reference_ids}
    for entry in entries:
        grouped[entry.reference_id].append(entry)

    history = []
    for ref in reference_ids:
        rows = grouped[ref]
        outputs = [e for e in rows if e.transaction_type == TX_PRODUCTION_IN]
        inputs = [e for e in rows if e.transaction_type == TX_PRODUCTION_OUT]
        history.append({
            "reference_id": ref,
            "department_id": rows[0].department_id if rows else None,
            "occurred_at": rows[0].to_dict()["occurred_at"] if rows else None,
            "created_by": rows[0].created_by if rows else None,
            "output": [e.to_dict() for e in outputs],
            "ingredients": [e.to_dict() for e in inputs],
        })
    return history
