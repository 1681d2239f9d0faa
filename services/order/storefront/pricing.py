"""
Order Service — 価格計算 (PriceEngine)

副作用なし・I/O なしの純粋関数。
カート表示・注文作成・注文編集・Webhook のすべてがこの計算を共有する。
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .models import Discount, DiscountKind, LineItem, ShippingOption


@dataclass(frozen=True)
class Totals:
    subtotal: int
    discount_amount: int
    total: int


def subtotal_of(items: list[LineItem]) -> int:
    return sum(item.unit_price * item.quantity for item in items)


def discount_amount_for(discount: Discount | None, subtotal: int) -> int:
    """
    割引額を計算する（上限クランプはしない）。

    percentage は最小通貨単位に四捨五入 (ROUND_HALF_UP)。
    free_shipping は小計を減らさない。送料側で相殺する (shipping_cost 参照)。
    """
    if discount is None:
        return 0
    match discount.kind:
        case DiscountKind.PERCENTAGE:
            amount = Decimal(subtotal) * Decimal(discount.value) / Decimal(100)
            return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        case DiscountKind.FIXED_AMOUNT:
            return discount.value
        case DiscountKind.FREE_SHIPPING:
            return 0
        case _:
            raise ValueError(f"Unknown discount kind: {discount.kind!r}")


def compute_totals(items: list[LineItem], discount: Discount | None) -> Totals:
    subtotal = subtotal_of(items)
    discount_amount = discount_amount_for(discount, subtotal)
    return Totals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        total=max(0, subtotal - discount_amount),
    )


def shipping_cost(option: ShippingOption | None, discount: Discount | None) -> int:
    """配送オプションの定額料金。free_shipping 割引があれば 0。"""
    if option is None:
        return 0
    if discount is not None and discount.kind is DiscountKind.FREE_SHIPPING:
        return 0
    return option.price
