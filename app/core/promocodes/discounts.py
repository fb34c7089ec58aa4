from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol, Union

from app.core.promocodes.errors import InvariantViolation
from app.core.promocodes.models import DiscountType


_CENT = Decimal("0.01")


class Discountable(Protocol):
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Optional[Decimal]


def _money(value: Union[Decimal, int, float, str]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_discount(promo: Discountable, price: Union[Decimal, int, float, str]) -> Decimal:
    """Discount for ``price``, rounded half-up to cents.

    Percentage discounts are capped by ``max_discount_amount``; fixed
    discounts never exceed the price. Never negative.
    """
    price = max(_money(price), Decimal("0"))
    value = _money(promo.discount_value)

    if promo.discount_type == DiscountType.PERCENTAGE:
        discount = price * value / Decimal("100")
        if promo.max_discount_amount is not None:
            discount = min(discount, _money(promo.max_discount_amount))
    elif promo.discount_type == DiscountType.FIXED:
        discount = min(value, price)
    else:
        raise InvariantViolation(
            f"Invalid discount type {promo.discount_type!r} for promo code {promo.code}"
        )

    discount = max(discount, Decimal("0"))
    return discount.quantize(_CENT, rounding=ROUND_HALF_UP)


__all__ = ["calculate_discount"]
