"""
Order Service — イベント定義

注文に起きた事実をイベントとして定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
注文と同じトランザクションで order_events に追記され、
コミット後に Redis の order_events チャネルへ発行される。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from .models import Order, OrderStatus


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: UUID
    customer_email: str
    items: list[dict]
    discount_id: UUID | None
    subtotal: int
    discount_amount: int
    total: int
    shipping_cost: int
    payment_reference: str | None
    timestamp: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderCreated":
        return cls(
            order_id=order.id,
            customer_email=order.customer.email,
            items=[item.model_dump(mode="json") for item in order.items],
            discount_id=order.discount_id,
            subtotal=order.subtotal,
            discount_amount=order.discount_amount,
            total=order.total,
            shipping_cost=order.shipping_cost,
            payment_reference=order.payment_reference,
            timestamp=order.created_at,
        )


class OrderStatusChanged(BaseModel):
    """注文ステータスが遷移した"""
    order_id: UUID
    previous_status: OrderStatus
    status: OrderStatus
    timestamp: datetime


class OrderItemsReplaced(BaseModel):
    """注文明細が丸ごと置き換えられた"""
    order_id: UUID
    items: list[dict]
    subtotal: int
    discount_amount: int
    total: int
    timestamp: datetime
