"""Decimal helpers for monetary values."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Any, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """Convert floats/ints/strings to Decimal via str() so 0.1 stays 0.1."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def round_money(value: Decimal) -> Decimal:
    """Half-up rounding to cents. Only applied at output."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    if value < low:
        return low
    if value > high:
        return high
    return value


def money_float(value: Optional[Decimal]) -> Optional[float]:
    """JSON-friendly rendering of an already rounded amount."""
    if value is None:
        return None
    return float(round_money(value))
