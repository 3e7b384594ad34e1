# Overview: Input coercion for quantities, ids and payload fields.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

QUANTITY_STEP = Decimal("0.001")
PRICE_STEP = Decimal("0.01")

# Largest value a Numeric(12, 3) column can hold
MAX_QUANTITY = Decimal("999999999.999")


class ValidationError(ValueError):
    """400-level input problem."""


def to_quantity(value: Any, field: str = "quantity", *, allow_zero: bool = False, allow_negative: bool = False) -> Decimal:
    """
    Coerce client input into a Decimal quantity with three fractional digits.

    Floats are converted through str() so 0.1 stays 0.1. Booleans,
    NaN and infinities are rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        if isinstance(value, float):
            value = str(value)
        qty = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not qty.is_finite():
        raise ValidationError(f"{field} must be a finite number")

    qty = qty.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)

    if abs(qty) > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}")
    if qty < 0 and not allow_negative:
        raise ValidationError(f"{field} must be >= 0")
    if qty == 0 and not allow_zero:
        raise ValidationError(f"{field} must be non-zero" if allow_negative else f"{field} must be > 0")
    return qty


def quantize_quantity(value) -> Decimal:
    """Normalize a stored or computed quantity (None counts as zero)."""
    if value is None:
        return Decimal("0.000")
    return Decimal(value).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def quantize_price(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(value).quantize(PRICE_STEP, rounding=ROUND_HALF_UP)


def to_int(value: Any, field: str) -> int:
    # Strict: reject floats, bools and scientific notation
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    raise ValidationError(f"{field} must be an integer")


def optional_int(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    return to_int(value, field)


def require_fields(data: dict | None, *fields: str) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    missing = [name for name in fields if data.get(name) is None]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
    return data


def parse_items(raw: Any) -> list[dict]:
    """
    Normalize a list of {"material_id", "unit_id", "qty_requested"} payloads.

    Returns plain dicts with int ids and Decimal quantities; catalog
    existence is checked by the workflow, not here.
    """
    if not isinstance(raw, list) or not raw:
        raise ValidationError("items must be a non-empty list")
    items = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError(f"items[{index}] must be an object")
        for name in ("material_id", "unit_id", "qty_requested"):
            if entry.get(name) is None:
                raise ValidationError(f"items[{index}].{name} is required")
        items.append({
            "material_id": to_int(entry["material_id"], f"items[{index}].material_id"),
            "unit_id": to_int(entry["unit_id"], f"items[{index}].unit_id"),
            "qty_requested": to_quantity(entry["qty_requested"], f"items[{index}].qty_requested"),
        })
    return items
