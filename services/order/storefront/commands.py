"""
Order Service — コマンドハンドラ (注文ライフサイクル)

状態を変更する操作。各コマンドは 1 トランザクションで実行され、
途中で失敗すれば何もコミットされない。

    create_order      — 価格確定・金額照合・割引判定・利用回数加算・注文保存
    transition_status — ステータス遷移（初回 DELIVERED 時のみ在庫を減らす）
    replace_items     — 明細の丸ごと置き換え（割引を再判定）

コミット後にイベントを Redis Pub/Sub で発行する（他サービスへ通知）。
"""

import logging
from datetime import datetime, timezone
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from . import discounts, pricing
from .aggregate import EDITABLE_STATUSES, check_transition
from .checkout import OrderItemInput, price_items, resolve_discount, resolve_shipping_option
from .errors import (
    ConcurrencyConflict,
    DiscountRejected,
    DuplicatePaymentReference,
    InsufficientInventory,
    NotFound,
    OrderNotEditable,
)
from .events import OrderCreated, OrderItemsReplaced, OrderStatusChanged
from .models import Customer, Order, OrderStatus
from .publisher import EventPublisher
from .reconciliation import ProvidedTotals, reconcile
from .store import OrderStore, StoreTransaction

logger = logging.getLogger(__name__)


class CreateOrderCommand(BaseModel):
    order_id: UUID = Field(default_factory=uuid4)
    customer: Customer
    items: list[OrderItemInput]
    discount_id: UUID | None = None
    discount_code: str | None = None
    shipping_option_id: UUID | None = None
    payment_reference: str | None = None
    provided: ProvidedTotals | None = None


async def create_order(
    store: OrderStore,
    publisher: EventPublisher,
    command: CreateOrderCommand,
    *,
    now: datetime | None = None,
) -> Order:
    """
    注文作成コマンド

    1. 明細の価格を確定し、サーバー側で金額を計算
    2. クライアント送信の金額と照合 (不一致 → TamperedTotal)
    3. 割引の適用判定 (不可 → DiscountRejected)
    4. 割引の利用回数を条件付きで +1 (負け → ConcurrencyConflict)
    5. 注文と OrderCreated イベントを保存
    """
    now = now or datetime.now(timezone.utc)

    async def work(tx: StoreTransaction) -> tuple[Order, OrderCreated]:
        items = await price_items(tx, command.items)
        discount = await resolve_discount(tx, command.discount_id, command.discount_code)
        option = await resolve_shipping_option(tx, command.shipping_option_id)

        totals = pricing.compute_totals(items, discount)
        shipping = pricing.shipping_cost(option, discount)
        reconcile(
            command.provided,
            {
                "subtotal": totals.subtotal,
                "discount_amount": totals.discount_amount,
                "total": totals.total,
                "shipping_cost": shipping,
                "amount_due": totals.total + shipping,
            },
        )

        if discount is not None:
            reason = discounts.validate(
                discount, now, totals.subtotal, [item.product_id for item in items]
            )
            if reason is not None:
                raise DiscountRejected(reason)

        if command.payment_reference is not None:
            if await tx.get_order_by_payment_reference(command.payment_reference):
                raise DuplicatePaymentReference(command.payment_reference)

        if discount is not None and not await tx.increment_discount_usage(discount.id):
            # 判定後に他の注文が先に上限へ達した
            raise ConcurrencyConflict(
                f"Discount {discount.code} reached its usage limit concurrently, please retry"
            )

        order = Order(
            id=command.order_id,
            customer=command.customer,
            items=items,
            discount_id=discount.id if discount else None,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            total=totals.total,
            shipping_option_id=option.id if option else None,
            shipping_cost=shipping,
            status=OrderStatus.PENDING,
            payment_reference=command.payment_reference,
            version=1,
            created_at=now,
            updated_at=now,
        )
        await tx.save_order(order)

        event = OrderCreated.from_order(order)
        await tx.append_event(order.id, "OrderCreated", event.model_dump(mode="json"), 0)
        return order, event

    order, event = await store.run(work)
    logger.info(
        "Order %s created: subtotal=%d discount=%d total=%d",
        order.id,
        order.subtotal,
        order.discount_amount,
        order.total,
    )
    await publisher.publish(event)
    return order


async def _deduct_inventory(tx: StoreTransaction, order: Order) -> None:
    for item in order.items:
        if await tx.decrement_inventory(item.product_id, item.quantity):
            continue
        if await tx.get_product(item.product_id) is None:
            raise NotFound("Product", item.product_id)
        raise InsufficientInventory(item.product_id, item.quantity)


async def transition_status(
    store: OrderStore,
    publisher: EventPublisher,
    order_id: UUID,
    new_status: OrderStatus,
    *,
    now: datetime | None = None,
) -> Order:
    """
    ステータス遷移コマンド

    DELIVERED への初回遷移時のみ、明細ごとに在庫を減らす。
    在庫更新とステータス更新は同じトランザクションで行い、
    どちらかが失敗すればステータスは変わらない。
    現在と同じステータスの指定は何もしない。
    """
    now = now or datetime.now(timezone.utc)

    async def work(tx: StoreTransaction) -> tuple[Order, OrderStatusChanged | None]:
        order = await tx.get_order(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        if not check_transition(order.status, new_status):
            return order, None

        if new_status == OrderStatus.DELIVERED:
            await _deduct_inventory(tx, order)

        # version 条件で二重配送などの同時遷移を検知（在庫更新もロールバックされる）
        if not await tx.update_order_status(order.id, new_status, order.version, now):
            raise ConcurrencyConflict(f"Order {order.id} was modified concurrently, please retry")

        event = OrderStatusChanged(
            order_id=order.id,
            previous_status=order.status,
            status=new_status,
            timestamp=now,
        )
        await tx.append_event(
            order.id, "OrderStatusChanged", event.model_dump(mode="json"), order.version
        )
        updated = order.model_copy(
            update={"status": new_status, "version": order.version + 1, "updated_at": now}
        )
        return updated, event

    order, event = await store.run(work)
    if event is None:
        logger.info("Order %s already %s, nothing to do", order.id, order.status.value)
        return order

    logger.info(
        "Order %s: %s -> %s", order.id, event.previous_status.value, event.status.value
    )
    await publisher.publish(event)
    return order


async def replace_items(
    store: OrderStore,
    publisher: EventPublisher,
    order_id: UUID,
    items: list[OrderItemInput],
    provided: ProvidedTotals | None = None,
    *,
    now: datetime | None = None,
) -> Order:
    """
    明細置き換えコマンド

    既存の明細を破棄し、新しい明細を create_order と同じ手順で価格確定する。
    適用済みの割引は新しい小計・商品構成で再判定し、
    適用できなくなった場合は割引を外さずに編集全体を拒否する。
    編集できるのは PENDING / PROCESSING の注文のみ。
    """
    now = now or datetime.now(timezone.utc)

    async def work(tx: StoreTransaction) -> tuple[Order, OrderItemsReplaced]:
        order = await tx.get_order(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        if order.status not in EDITABLE_STATUSES:
            raise OrderNotEditable(order.status)

        line_items = await price_items(tx, items)
        discount = None
        if order.discount_id is not None:
            discount = await tx.get_discount(order.discount_id)
            if discount is None:
                raise NotFound("Discount", order.discount_id)

        totals = pricing.compute_totals(line_items, discount)
        reconcile(
            provided,
            {
                "subtotal": totals.subtotal,
                "discount_amount": totals.discount_amount,
                "total": totals.total,
                "shipping_cost": order.shipping_cost,
                "amount_due": totals.total + order.shipping_cost,
            },
        )

        if discount is not None:
            # 有効化フラグ・期間・利用回数は注文作成時に満たしている。
            # 作成時点の条件で、新しい小計と商品構成だけを判定し直す。
            as_of_creation = discount.model_copy(update={"is_active": True, "usage_limit": None})
            reason = discounts.validate(
                as_of_creation,
                order.created_at,
                totals.subtotal,
                [item.product_id for item in line_items],
            )
            if reason is not None:
                raise DiscountRejected(reason)

        updated = order.model_copy(
            update={
                "items": line_items,
                "subtotal": totals.subtotal,
                "discount_amount": totals.discount_amount,
                "total": totals.total,
                "version": order.version + 1,
                "updated_at": now,
            }
        )
        if not await tx.replace_order_items(updated, order.version):
            raise ConcurrencyConflict(f"Order {order.id} was modified concurrently, please retry")

        event = OrderItemsReplaced(
            order_id=order.id,
            items=[item.model_dump(mode="json") for item in line_items],
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            total=totals.total,
            timestamp=now,
        )
        await tx.append_event(
            order.id, "OrderItemsReplaced", event.model_dump(mode="json"), order.version
        )
        return updated, event

    order, event = await store.run(work)
    logger.info("Order %s items replaced: total=%d", order.id, order.total)
    await publisher.publish(event)
    return order
