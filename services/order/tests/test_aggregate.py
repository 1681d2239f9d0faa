"""注文ステータス遷移とイベントリプレイのテスト"""

from uuid import uuid4

import pytest

from storefront.aggregate import TRANSITIONS, OrderAggregate, check_transition
from storefront.errors import IllegalTransition
from storefront.models import OrderStatus as S

LEGAL = [
    (S.PENDING, S.PROCESSING),
    (S.PENDING, S.CANCELLED),
    (S.PROCESSING, S.SHIPPED),
    (S.PROCESSING, S.CANCELLED),
    (S.SHIPPED, S.DELIVERED),
    (S.SHIPPED, S.CANCELLED),
]


class TestCheckTransition:
    @pytest.mark.parametrize("current,requested", LEGAL)
    def test_legal(self, current, requested):
        assert check_transition(current, requested) is True

    @pytest.mark.parametrize(
        "current,requested",
        [
            (S.DELIVERED, S.SHIPPED),
            (S.DELIVERED, S.CANCELLED),
            (S.CANCELLED, S.PENDING),
            (S.CANCELLED, S.PROCESSING),
            (S.PENDING, S.SHIPPED),
            (S.PENDING, S.DELIVERED),
            (S.SHIPPED, S.PROCESSING),
        ],
    )
    def test_illegal(self, current, requested):
        with pytest.raises(IllegalTransition) as exc_info:
            check_transition(current, requested)
        assert exc_info.value.current is current
        assert exc_info.value.requested is requested

    @pytest.mark.parametrize("status", list(S))
    def test_same_status_is_noop(self, status):
        assert check_transition(status, status) is False

    def test_terminal_states_have_no_exits(self):
        assert TRANSITIONS[S.DELIVERED] == frozenset()
        assert TRANSITIONS[S.CANCELLED] == frozenset()


class TestOrderAggregate:
    def _events(self, order_id):
        return [
            {
                "event_type": "OrderCreated",
                "event_data": {
                    "order_id": str(order_id),
                    "items": [{"product_id": str(uuid4()), "quantity": 2, "unit_price": 500}],
                    "subtotal": 1000,
                    "discount_amount": 100,
                    "total": 900,
                },
                "version": 1,
            },
            {
                "event_type": "OrderItemsReplaced",
                "event_data": {
                    "items": [
                        {"product_id": str(uuid4()), "quantity": 1, "unit_price": 500},
                        {"product_id": str(uuid4()), "quantity": 1, "unit_price": 700},
                    ],
                    "subtotal": 1200,
                    "discount_amount": 120,
                    "total": 1080,
                },
                "version": 2,
            },
            {
                "event_type": "OrderStatusChanged",
                "event_data": {"previous_status": "PENDING", "status": "PROCESSING"},
                "version": 3,
            },
        ]

    def test_replay(self):
        order_id = uuid4()
        agg = OrderAggregate.from_events(self._events(order_id))
        assert agg.to_dict() == {
            "order_id": str(order_id),
            "status": "PROCESSING",
            "subtotal": 1200,
            "discount_amount": 120,
            "total": 1080,
            "item_count": 2,
            "version": 3,
        }

    def test_empty_history(self):
        agg = OrderAggregate.from_events([])
        assert agg.id is None
        assert agg.version == 0

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            OrderAggregate().apply_event("OrderTeleported", {})
