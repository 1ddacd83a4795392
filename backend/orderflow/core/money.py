"""Money arithmetic helpers shared by pricing, vouchers, and payments."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, str]


def to_money(value: MoneyLike) -> Decimal:
    """Convert a value to a Decimal rounded half-up to whole cents."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_order_total(
    subtotal: Decimal,
    shipping_fee: Decimal,
    discount: Decimal,
) -> Decimal:
    """Order total: subtotal + shipping - discount, floored at zero."""
    total = to_money(subtotal) + to_money(shipping_fee) - to_money(discount)
    return max(ZERO, to_money(total))
