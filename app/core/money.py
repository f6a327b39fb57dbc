"""
Money helpers.

Amounts are integers in the smallest display unit of the deployment currency.
Every computation boundary rounds half-up, never banker's rounding.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[int, float, Decimal]


def round_half_up(value: Number) -> int:
    """Round to the nearest whole unit, .5 going up"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_km(value: Number) -> float:
    """Distance rounded to 0.1 km, as shown to customers and riders"""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def percent_of(amount: int, rate_pct: Number) -> int:
    """``rate_pct`` percent of ``amount``, rounded half-up"""
    return round_half_up(Decimal(amount) * Decimal(str(rate_pct)) / Decimal(100))
