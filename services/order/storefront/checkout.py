"""
Order Service — チェックアウト (明細の価格確定と見積り)

注文作成・注文編集・見積りで共通の前処理:
    1. 数量チェック (1 以上の整数)
    2. 商品の存在確認と価格スナップショット
    3. 割引 (ID またはコード) と配送オプションの解決

quote() は何も書き込まない。カート画面や注文編集画面の表示用で、
保存される金額は常に commands 側で再計算した値。
"""

from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel

from . import discounts, pricing
from .discounts import RejectionReason
from .errors import InputError, InvalidQuantity, NotFound
from .models import Discount, LineItem, ShippingOption, ShippingStatus
from .store import OrderStore, StoreTransaction


class OrderItemInput(BaseModel):
    product_id: UUID
    quantity: int


class Quote(BaseModel):
    subtotal: int
    discount_amount: int
    total: int
    shipping_cost: int
    amount_due: int
    discount_id: UUID | None = None
    discount_rejection: RejectionReason | None = None


async def price_items(tx: StoreTransaction, items: list[OrderItemInput]) -> list[LineItem]:
    if not items:
        raise InputError("items", "Order must include at least one item.")
    for i, item in enumerate(items):
        if item.quantity <= 0:
            raise InvalidQuantity(f"items[{i}].quantity", item.quantity)

    line_items = []
    for item in items:
        product = await tx.get_product(item.product_id)
        if product is None:
            raise NotFound("Product", item.product_id)
        line_items.append(
            LineItem(product_id=product.id, quantity=item.quantity, unit_price=product.price)
        )
    return line_items


async def resolve_discount(
    tx: StoreTransaction,
    discount_id: UUID | None,
    discount_code: str | None,
) -> Discount | None:
    if discount_id is not None and discount_code:
        raise InputError("discount_code", "Specify either discount_id or discount_code, not both")
    if discount_id is not None:
        discount = await tx.get_discount(discount_id)
        if discount is None:
            raise NotFound("Discount", discount_id)
        return discount
    if discount_code:
        discount = await tx.get_discount_by_code(discount_code)
        if discount is None:
            raise NotFound("Discount", discounts.normalize_code(discount_code))
        return discount
    return None


async def resolve_shipping_option(
    tx: StoreTransaction, option_id: UUID | None
) -> ShippingOption | None:
    if option_id is None:
        return None
    option = await tx.get_shipping_option(option_id)
    if option is None:
        raise NotFound("Shipping option", option_id)
    if option.status is not ShippingStatus.ACTIVE:
        raise InputError("shipping_option_id", "Invalid or inactive shipping option")
    return option


async def quote(
    store: OrderStore,
    items: list[OrderItemInput],
    discount_id: UUID | None = None,
    discount_code: str | None = None,
    shipping_option_id: UUID | None = None,
    *,
    now: datetime | None = None,
) -> Quote:
    """
    見積りを返す。割引が適用できない場合は割引なしの金額と拒否理由を返す
    （エラーにはしない。画面で「このコードは使えません」を表示するため）。
    """
    now = now or datetime.now(timezone.utc)

    async def work(tx: StoreTransaction) -> Quote:
        line_items = await price_items(tx, items)
        discount = await resolve_discount(tx, discount_id, discount_code)
        option = await resolve_shipping_option(tx, shipping_option_id)

        rejection = None
        if discount is not None:
            rejection = discounts.validate(
                discount,
                now,
                pricing.subtotal_of(line_items),
                [item.product_id for item in line_items],
            )
        applied = discount if rejection is None else None

        totals = pricing.compute_totals(line_items, applied)
        shipping = pricing.shipping_cost(option, applied)
        return Quote(
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            total=totals.total,
            shipping_cost=shipping,
            amount_due=totals.total + shipping,
            discount_id=applied.id if applied else None,
            discount_rejection=rejection,
        )

    return await store.run(work)
