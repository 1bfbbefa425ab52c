"""Decimal helpers for currency amounts."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def to_decimal(value: object) -> Decimal:
    """Convert a JSON number or string to ``Decimal`` without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a monetary amount: {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return amount


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percentage: Decimal | int) -> Decimal:
    return quantize(amount * Decimal(percentage) / Decimal(100))


def to_minor_units(amount: Decimal) -> int:
    """Amount in the currency's minor unit (pesewas, cents) as expected by Stripe."""
    return int((quantize(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))
