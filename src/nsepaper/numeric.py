"""Decimal helpers shared by pricing, execution and the ledger."""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any

from nsepaper.constants import ContractSpec

ZERO = Decimal("0")
ONE = Decimal("1")
PAISA = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Convert ints, strings and floats to Decimal via their string form."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_to_tick(price: Decimal, tick_size: Decimal = ContractSpec.TICK_SIZE) -> Decimal:
    """Round a price to the nearest multiple of tick_size (half up)."""
    ticks = (price / tick_size).quantize(ONE, rounding=ROUND_HALF_UP)
    return (ticks * tick_size).quantize(tick_size)


def round_to_paisa(amount: Decimal) -> Decimal:
    return amount.quantize(PAISA, rounding=ROUND_HALF_UP)


def floor_to_multiple(quantity: int, multiple: int) -> int:
    if multiple <= 0:
        return quantity
    return (quantity // multiple) * multiple


def weighted_average(pairs: Iterable[tuple[Decimal, int | Decimal]]) -> Decimal:
    """Weighted mean of (value, weight) pairs; zero when total weight is zero."""
    total_value = ZERO
    total_weight = ZERO
    for value, weight in pairs:
        total_value += value * weight
        total_weight += weight
    if total_weight == 0:
        return ZERO
    return total_value / total_weight


def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


def floor_decimal(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def format_inr(amount: Decimal) -> str:
    """Format an amount as rupees with two decimals and a sign for negatives."""
    rounded = round_to_paisa(amount)
    sign = "-" if rounded < 0 else ""
    return f"{sign}₹{abs(rounded):,.2f}"
