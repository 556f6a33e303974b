"""
Money helpers.

All amounts are handled as ``Decimal`` and rounded half away from zero to
two places, which is what the filing schema expects.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, float, int, str]


def to_decimal(value: Optional[Number]) -> Decimal:
    """
    Best-effort conversion to Decimal. ``None`` and unparsable values become 0.

    Floats go through ``str`` so 0.1 stays 0.1 rather than its binary expansion.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip() or "0")
    except InvalidOperation:
        return ZERO


def round_amount(value: Optional[Number]) -> Decimal:
    """Round to two decimals, half away from zero. Idempotent."""
    rounded = to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded == 0:
        # Drop the sign of negative zero.
        return ZERO
    return rounded


def format_amount(value: Optional[Number]) -> str:
    """Render an amount with exactly two decimal places, e.g. ``1234.50``."""
    return f"{round_amount(value):.2f}"


def sum_amounts(values: Iterable[Optional[Number]]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return round_amount(total)
