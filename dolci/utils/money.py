from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from dolci.errors import InvalidAmount

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce to a 2-place Decimal. Floats go through str() to avoid binary noise."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Not an amount: {value!r}")
