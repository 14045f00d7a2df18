from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from stockledger.time_utils import parse_business_date


# Largest absolute quantity a Numeric(14, 3) column holds
MAX_QUANTITY = Decimal("99999999999.999")

# Direction every transaction type must move stock when posted by a caller.
# +1 inflow, -1 outflow, 0 either direction (but never zero).
EXPECTED_SIGN = {
    "receive": 1,
    "sale": -1,
    "adjustment": 0,
    "transfer_in": 1,
    "transfer_out": -1,
    "initial": 0,
    "production_transform_in": 1,
    "production_transform_out": -1,
}


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., count already applied)."""


def parse_int(value: Any, field: str, *, required: bool = True) -> int | None:
    """
    Strict integer parsing: rejects floats, booleans, decimals and
    scientific notation.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    if isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    raise ValidationError(f"{field} must be an integer")


def parse_quantity(
    value: Any,
    field: str = "quantity",
    *,
    positive: bool = False,
    nonzero: bool = False,
) -> Decimal:
    """Parse a JSON number / numeric string into a finite Decimal."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, str) and "e" in value.strip().lower():
        raise ValidationError(f"{field} must be a plain number (scientific notation not allowed)")
    try:
        qty = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not qty.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if abs(qty) > MAX_QUANTITY:
        raise ValidationError(f"{field} is out of range")
    if positive and qty <= 0:
        raise ValidationError(f"{field} must be > 0")
    if nonzero and qty == 0:
        raise ValidationError(f"{field} must be non-zero")
    return qty


def parse_date(value: Any, field: str, *, required: bool = True) -> date | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    try:
        return parse_business_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)")


def enforce_rules_movement(transaction_type: str, quantity: Decimal) -> None:
    """
    Sign convention for caller-posted movements.

    The ledger itself accepts any sign; this is the check the caller-facing
    surface applies before posting.
    """
    if transaction_type not in EXPECTED_SIGN:
        raise ValidationError(f"Unknown transaction_type: {transaction_type}")
    if quantity == 0:
        raise ValidationError("quantity must be non-zero")
    expected = EXPECTED_SIGN[transaction_type]
    if expected > 0 and quantity < 0:
        raise ValidationError(f"quantity must be > 0 for {transaction_type}")
    if expected < 0 and quantity > 0:
        raise ValidationError(f"quantity must be < 0 for {transaction_type}")
