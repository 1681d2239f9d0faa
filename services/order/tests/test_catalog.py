"""カタログ管理 (商品・配送オプション・割引) のテスト"""

from datetime import timedelta
from uuid import uuid4

import pytest

from storefront import catalog, commands, queries
from storefront.catalog import (
    DiscountCreate,
    DiscountUpdate,
    ProductCreate,
    ProductUpdate,
    ShippingOptionCreate,
)
from storefront.checkout import OrderItemInput
from storefront.commands import CreateOrderCommand
from storefront.errors import DuplicateDiscountCode, InputError, NotFound, ReferencedByOpenOrders
from storefront.models import DiscountKind, OrderStatus

from conftest import NOW, seed_discount, seed_product


def discount_request(**overrides) -> DiscountCreate:
    fields = {
        "code": "WELCOME10",
        "kind": DiscountKind.PERCENTAGE,
        "value": 10,
        "active_from": NOW,
    }
    fields.update(overrides)
    return DiscountCreate(**fields)


async def open_order(store, publisher, customer, product, **kwargs):
    command = CreateOrderCommand(
        customer=customer, items=[OrderItemInput(product_id=product.id, quantity=1)], **kwargs
    )
    return await commands.create_order(store, publisher, command, now=NOW)


class TestProducts:
    async def test_create_and_get(self, store):
        product = await catalog.create_product(
            store, ProductCreate(title="Shea butter", price=2500, inventory=4)
        )
        stored = await queries.get_product(store, product.id)
        assert stored == product

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError):
            ProductCreate(title="Broken", price=-1)

    async def test_list_ordered_by_title(self, store):
        b = await seed_product(store, title="Black soap")
        a = await seed_product(store, title="Ankara tote")
        listed = await queries.list_products(store)
        assert [p.id for p in listed] == [a.id, b.id]


class TestUpdateProduct:
    async def test_partial_update(self, store):
        product = await seed_product(store, price=1000, inventory=3, title="Kente")

        updated = await catalog.update_product(
            store, product.id, ProductUpdate(price=1500, inventory=7)
        )

        assert (updated.title, updated.price, updated.inventory) == ("Kente", 1500, 7)
        assert await queries.get_product(store, product.id) == updated

    async def test_explicit_null_rejected(self, store):
        product = await seed_product(store, price=1000)
        with pytest.raises(InputError) as exc_info:
            await catalog.update_product(store, product.id, ProductUpdate(price=None))
        assert exc_info.value.field == "price"
        assert (await queries.get_product(store, product.id)).price == 1000

    @pytest.mark.parametrize("fields", [{"title": ""}, {"price": -1}, {"inventory": -5}])
    def test_invalid_fields_rejected(self, fields):
        with pytest.raises(ValueError):
            ProductUpdate(**fields)

    async def test_unknown_product(self, store):
        with pytest.raises(NotFound):
            await catalog.update_product(store, uuid4(), ProductUpdate(price=100))


class TestDeleteProduct:
    async def test_delete(self, store):
        product = await seed_product(store)
        await catalog.delete_product(store, product.id)
        assert await queries.get_product(store, product.id) is None

    async def test_unknown_product(self, store):
        with pytest.raises(NotFound):
            await catalog.delete_product(store, uuid4())

    async def test_blocked_while_order_is_open(self, store, publisher, customer):
        product = await seed_product(store)
        order = await open_order(store, publisher, customer, product)

        with pytest.raises(ReferencedByOpenOrders):
            await catalog.delete_product(store, product.id)
        assert await queries.get_product(store, product.id) is not None

        await commands.transition_status(
            store, publisher, order.id, OrderStatus.CANCELLED, now=NOW
        )
        await catalog.delete_product(store, product.id)
        assert await queries.get_product(store, product.id) is None

    async def test_removed_from_discount_eligibility(self, store):
        keep = await seed_product(store)
        gone = await seed_product(store)
        discount = await seed_discount(store, eligible_product_ids=[keep.id, gone.id])

        await catalog.delete_product(store, gone.id)

        stored = await queries.get_discount(store, discount.id)
        assert stored.eligible_product_ids == [keep.id]


class TestShippingOptions:
    async def test_create(self, store):
        option = await catalog.create_shipping_option(
            store, ShippingOptionCreate(name="Next day", price=3000, delivery_time="1 day")
        )
        assert option.price == 3000


class TestCreateDiscount:
    async def test_create(self, store):
        discount = await catalog.create_discount(store, discount_request())
        assert discount.usage_count == 0
        assert await queries.get_discount(store, discount.id) == discount

    async def test_code_lookup_ignores_case(self, store):
        discount = await catalog.create_discount(store, discount_request(code="Welcome10"))
        found = await queries.get_discount_by_code(store, "welcome10")
        assert found.id == discount.id

    async def test_duplicate_code_rejected(self, store):
        await catalog.create_discount(store, discount_request(code="WELCOME10"))
        with pytest.raises(DuplicateDiscountCode):
            await catalog.create_discount(store, discount_request(code="welcome10"))

    @pytest.mark.parametrize("value", [0, 101])
    async def test_percentage_out_of_range(self, store, value):
        with pytest.raises(InputError) as exc_info:
            await catalog.create_discount(store, discount_request(value=value))
        assert exc_info.value.field == "value"

    async def test_fixed_amount_must_be_positive(self, store):
        with pytest.raises(InputError):
            await catalog.create_discount(
                store, discount_request(kind=DiscountKind.FIXED_AMOUNT, value=0)
            )

    async def test_window_must_not_be_inverted(self, store):
        with pytest.raises(InputError) as exc_info:
            await catalog.create_discount(
                store, discount_request(active_until=NOW - timedelta(days=1))
            )
        assert exc_info.value.field == "active_until"

    async def test_eligible_products_must_exist(self, store):
        with pytest.raises(NotFound):
            await catalog.create_discount(store, discount_request(eligible_product_ids=[uuid4()]))

    async def test_eligible_products_round_trip(self, store):
        product = await seed_product(store)
        discount = await catalog.create_discount(
            store, discount_request(eligible_product_ids=[product.id])
        )
        stored = await queries.get_discount(store, discount.id)
        assert stored.eligible_product_ids == [product.id]

    def test_naive_datetime_rejected(self):
        with pytest.raises(ValueError):
            discount_request(active_from=NOW.replace(tzinfo=None))


class TestUpdateDiscount:
    async def test_partial_update_keeps_usage_count(self, store):
        discount = await seed_discount(store, usage_limit=10, usage_count=4)

        updated = await catalog.update_discount(
            store, discount.id, DiscountUpdate(usage_limit=20, is_active=False)
        )

        assert updated.usage_limit == 20
        assert updated.is_active is False
        assert updated.value == discount.value
        stored = await queries.get_discount(store, discount.id)
        assert stored.usage_count == 4
        assert stored.usage_limit == 20

    async def test_rename_to_taken_code(self, store):
        first = await seed_discount(store, code="ONE")
        await seed_discount(store, code="TWO")
        with pytest.raises(DuplicateDiscountCode):
            await catalog.update_discount(store, first.id, DiscountUpdate(code="two"))

    async def test_invalid_merge_rejected(self, store):
        discount = await seed_discount(store, kind=DiscountKind.PERCENTAGE, value=10)
        with pytest.raises(InputError):
            await catalog.update_discount(store, discount.id, DiscountUpdate(value=150))

    async def test_unknown_discount(self, store):
        with pytest.raises(NotFound):
            await catalog.update_discount(store, uuid4(), DiscountUpdate(is_active=False))

    async def test_limit_below_usage_count_rejected(self, store):
        discount = await seed_discount(store, usage_limit=10, usage_count=5)

        with pytest.raises(InputError) as exc_info:
            await catalog.update_discount(store, discount.id, DiscountUpdate(usage_limit=2))

        assert exc_info.value.field == "usage_limit"
        stored = await queries.get_discount(store, discount.id)
        assert (stored.usage_limit, stored.usage_count) == (10, 5)

    async def test_limit_equal_to_usage_count_allowed(self, store):
        discount = await seed_discount(store, usage_limit=10, usage_count=5)
        updated = await catalog.update_discount(store, discount.id, DiscountUpdate(usage_limit=5))
        assert updated.usage_limit == 5


class TestDeleteDiscount:
    async def test_delete(self, store):
        discount = await seed_discount(store, code="GONE")
        await catalog.delete_discount(store, discount.id)
        assert await queries.get_discount(store, discount.id) is None
        assert await queries.get_discount_by_code(store, "gone") is None

    async def test_unknown_discount(self, store):
        with pytest.raises(NotFound):
            await catalog.delete_discount(store, uuid4())

    async def test_blocked_while_order_is_open(self, store, publisher, customer):
        product = await seed_product(store)
        discount = await seed_discount(store)
        await open_order(store, publisher, customer, product, discount_id=discount.id)

        with pytest.raises(ReferencedByOpenOrders):
            await catalog.delete_discount(store, discount.id)
        assert await queries.get_discount(store, discount.id) is not None


async def test_list_discounts_newest_first(store):
    older = await seed_discount(store, code="OLD", active_from=NOW - timedelta(days=10))
    newer = await seed_discount(store, code="NEW", active_from=NOW - timedelta(days=1))

    listed = await queries.list_discounts(store)

    assert [d.id for d in listed] == [newer.id, older.id]
