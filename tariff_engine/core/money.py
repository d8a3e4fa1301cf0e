"""
Currency rounding helpers.

All engine amounts are Decimals rounded half-up to the smallest currency unit
configured in EngineSettings.CURRENCY_DECIMAL_PLACES.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Union

from tariff_engine.core.config import get_settings

ZERO = Decimal("0")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    """Convert an int/str/Decimal to Decimal without going through float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("Money must not be passed as float")
    return Decimal(value)


def round_money(value: Number, quantum: Optional[Decimal] = None) -> Decimal:
    """
    Round to the smallest currency unit, half-up on ties.

    Args:
        value: Amount to round
        quantum: Optional explicit unit (defaults to the configured one)

    Returns:
        Rounded amount
    """
    unit = quantum if quantum is not None else get_settings().currency_quantum
    return to_decimal(value).quantize(unit, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    """Unrounded ``amount * percent / 100``."""
    return amount * percent / HUNDRED


def sum_money(values: Iterable[Decimal]) -> Decimal:
    """Sum amounts starting from a Decimal zero."""
    total = ZERO
    for value in values:
        total += value
    return total
