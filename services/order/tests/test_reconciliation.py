"""クライアント送信金額の照合テスト"""

import logging

import pytest

from storefront.errors import TamperedTotal
from storefront.reconciliation import ProvidedTotals, reconcile

COMPUTED = {
    "subtotal": 10000,
    "discount_amount": 1000,
    "total": 9000,
    "shipping_cost": 500,
    "amount_due": 9500,
}


def test_nothing_provided():
    reconcile(None, COMPUTED)
    reconcile(ProvidedTotals(), COMPUTED)


def test_matching_values_pass():
    reconcile(ProvidedTotals(subtotal=10000, total=9000, amount_due=9500), COMPUTED)


def test_mismatch_raises_without_correcting(caplog):
    with caplog.at_level(logging.WARNING, logger="storefront.reconciliation"):
        with pytest.raises(TamperedTotal) as exc_info:
            reconcile(ProvidedTotals(subtotal=9999), COMPUTED)

    assert exc_info.value.field == "subtotal"
    assert exc_info.value.provided == 9999
    assert exc_info.value.computed == 10000
    assert "Tampered subtotal" in caplog.text


def test_message_does_not_reveal_calculated_value():
    with pytest.raises(TamperedTotal) as exc_info:
        reconcile(ProvidedTotals(total=1), COMPUTED)
    assert "9000" not in str(exc_info.value)


def test_only_supplied_fields_are_checked():
    reconcile(ProvidedTotals(discount_amount=1000), COMPUTED)
    with pytest.raises(TamperedTotal) as exc_info:
        reconcile(ProvidedTotals(discount_amount=1000, shipping_cost=0), COMPUTED)
    assert exc_info.value.field == "shipping_cost"


def test_rejects_non_integer_amounts():
    with pytest.raises(ValueError):
        ProvidedTotals(total=90.0)
