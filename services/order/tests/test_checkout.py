"""見積り (quote) のテスト"""

import pytest

from storefront import checkout, queries
from storefront.checkout import OrderItemInput
from storefront.discounts import RejectionReason
from storefront.errors import InputError
from storefront.models import DiscountKind, ShippingStatus

from conftest import NOW, seed_discount, seed_product, seed_shipping


async def test_quote_with_discount_and_shipping(store):
    a = await seed_product(store, price=5000)
    b = await seed_product(store, price=3000)
    option = await seed_shipping(store, price=1500)
    discount = await seed_discount(store, value=10)

    quote = await checkout.quote(
        store,
        [OrderItemInput(product_id=a.id, quantity=2), OrderItemInput(product_id=b.id, quantity=1)],
        discount_id=discount.id,
        shipping_option_id=option.id,
        now=NOW,
    )

    assert quote.subtotal == 13000
    assert quote.discount_amount == 1300
    assert quote.total == 11700
    assert quote.shipping_cost == 1500
    assert quote.amount_due == 13200
    assert quote.discount_id == discount.id
    assert quote.discount_rejection is None


async def test_rejected_discount_quotes_full_price(store):
    product = await seed_product(store, price=1000)
    discount = await seed_discount(store, code="BIGSPEND", min_subtotal=5000)

    quote = await checkout.quote(
        store,
        [OrderItemInput(product_id=product.id, quantity=1)],
        discount_code="bigspend",
        now=NOW,
    )

    assert quote.discount_rejection is RejectionReason.SUBTOTAL_TOO_LOW
    assert quote.discount_id is None
    assert quote.total == 1000
    assert (await queries.get_discount(store, discount.id)).usage_count == 0


async def test_quote_writes_nothing(store):
    product = await seed_product(store)
    discount = await seed_discount(store, kind=DiscountKind.FREE_SHIPPING, value=0)
    option = await seed_shipping(store, price=900)

    quote = await checkout.quote(
        store,
        [OrderItemInput(product_id=product.id, quantity=1)],
        discount_id=discount.id,
        shipping_option_id=option.id,
        now=NOW,
    )

    assert quote.shipping_cost == 0
    assert (await queries.get_discount(store, discount.id)).usage_count == 0
    assert await queries.list_orders(store) == []


async def test_conditional_shipping_option_is_not_selectable(store):
    product = await seed_product(store)
    option = await seed_shipping(store, status=ShippingStatus.CONDITIONAL)

    with pytest.raises(InputError) as exc_info:
        await checkout.quote(
            store,
            [OrderItemInput(product_id=product.id, quantity=1)],
            shipping_option_id=option.id,
            now=NOW,
        )
    assert exc_info.value.field == "shipping_option_id"
