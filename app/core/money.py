"""Conversion between decimal currency and gateway minor units."""
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_minor_units(amount: Decimal | int | str) -> int:
    """Convert a decimal amount (dollars) to integer cents."""
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_minor_units(cents: int) -> Decimal:
    """Convert integer cents to a decimal amount (dollars)."""
    return (Decimal(int(cents)) / 100).quantize(CENT)


def round_money(amount: Decimal) -> Decimal:
    """Round to two decimal places for presentation."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)
