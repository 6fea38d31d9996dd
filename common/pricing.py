"""Discounted price calculation for catalog services."""
from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from .models import Discount, DiscountType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def is_discount_active(discount: Optional[Discount], today: date) -> bool:
    if discount is None:
        return False
    return discount.start_date <= today <= discount.end_date


def discounted_price(price: Number, discount: Optional[Discount], today: date) -> Decimal:
    """Price after applying ``discount`` on ``today``.

    Returns 0.00 when there is no discount or it is outside its date window,
    so callers can tell "no active discount" apart from a real price. Results
    are rounded half-up to cents and never go below zero.
    """

    if not is_discount_active(discount, today):
        return ZERO

    base = _to_decimal(price)
    value = _to_decimal(discount.value)
    if discount.type == DiscountType.PERCENTAGE:
        result = base * (1 - value / 100)
    elif discount.type == DiscountType.FIXED:
        result = base - value
    else:
        return ZERO

    return max(result.quantize(CENT, rounding=ROUND_HALF_UP), ZERO)
