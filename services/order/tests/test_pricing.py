"""価格計算 (PriceEngine) のテスト"""

from uuid import uuid4

import pytest

from storefront import pricing
from storefront.models import DiscountKind, ShippingOption

from conftest import item, make_discount


class TestSubtotal:
    def test_sums_price_times_quantity(self):
        items = [item(5000, 2), item(3000, 1)]
        assert pricing.subtotal_of(items) == 13000

    def test_line_item_subtotal(self):
        assert item(250, 4).subtotal == 1000


class TestComputeTotals:
    def test_percentage_discount(self):
        discount = make_discount(kind=DiscountKind.PERCENTAGE, value=10)
        totals = pricing.compute_totals([item(5000, 2), item(3000, 1)], discount)
        assert totals == pricing.Totals(subtotal=13000, discount_amount=1300, total=11700)

    def test_no_discount(self):
        totals = pricing.compute_totals([item(1999, 3)], None)
        assert totals.subtotal == 5997
        assert totals.discount_amount == 0
        assert totals.total == 5997

    def test_fixed_amount_larger_than_subtotal_clamps_total(self):
        discount = make_discount(kind=DiscountKind.FIXED_AMOUNT, value=5000)
        totals = pricing.compute_totals([item(3000, 1)], discount)
        assert totals.subtotal == 3000
        assert totals.discount_amount == 5000
        assert totals.total == 0

    @pytest.mark.parametrize(
        "subtotal,percent,expected",
        [
            (1005, 10, 101),  # 100.5 → 切り上げ
            (1004, 10, 100),
            (999, 15, 150),  # 149.85
            (1, 50, 1),  # 0.5 → 切り上げ
            (10000, 100, 10000),
        ],
    )
    def test_percentage_rounds_half_up(self, subtotal, percent, expected):
        discount = make_discount(kind=DiscountKind.PERCENTAGE, value=percent)
        assert pricing.discount_amount_for(discount, subtotal) == expected

    def test_free_shipping_leaves_items_untouched(self):
        discount = make_discount(kind=DiscountKind.FREE_SHIPPING, value=0)
        totals = pricing.compute_totals([item(4000, 1)], discount)
        assert totals.discount_amount == 0
        assert totals.total == 4000

    def test_total_invariant(self):
        discount = make_discount(kind=DiscountKind.PERCENTAGE, value=33)
        totals = pricing.compute_totals([item(777, 3), item(1, 1)], discount)
        assert totals.total == max(0, totals.subtotal - totals.discount_amount)


class TestShippingCost:
    def _option(self, price=1500):
        return ShippingOption(id=uuid4(), name="Express", price=price)

    def test_no_option_is_free(self):
        assert pricing.shipping_cost(None, None) == 0

    def test_flat_rate(self):
        assert pricing.shipping_cost(self._option(2500), None) == 2500

    def test_free_shipping_discount_waives_rate(self):
        discount = make_discount(kind=DiscountKind.FREE_SHIPPING, value=0)
        assert pricing.shipping_cost(self._option(2500), discount) == 0

    def test_other_discounts_keep_rate(self):
        discount = make_discount(kind=DiscountKind.FIXED_AMOUNT, value=100)
        assert pricing.shipping_cost(self._option(2500), discount) == 2500
