"""Fixed-point currency helpers (Philippine peso, centavo precision)."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: object) -> Decimal:
    """Coerce a value to Decimal without binary float artifacts."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)  # type: ignore[arg-type]


def money(value: object) -> Decimal:
    """Round to centavos, half up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[object]) -> Decimal:
    total = Decimal("0")
    for v in values:
        total += to_decimal(v)
    return money(total)


def percent_of(amount: object, rate_percent: object) -> Decimal:
    """Return `rate_percent` percent of `amount`, rounded to centavos."""
    return money(to_decimal(amount) * to_decimal(rate_percent) / HUNDRED)


def money_str(value: object) -> str:
    """Serialize money for JSON columns."""
    return str(money(value))
