"""
Order Service — クエリハンドラ (読み取り側)

状態を変更しない読み取り操作。見つからない場合は None を返し、
404 への変換は HTTP 層で行う。
"""

from uuid import UUID

from .aggregate import OrderAggregate
from .models import Discount, Order, Product
from .store import OrderStore


async def get_order(store: OrderStore, order_id: UUID) -> Order | None:
    return await store.run(lambda tx: tx.get_order(order_id))


async def list_orders(store: OrderStore) -> list[Order]:
    """全注文を新しい順に取得する。"""
    return await store.run(lambda tx: tx.list_orders())


async def get_order_history(store: OrderStore, order_id: UUID) -> dict | None:
    """
    注文のイベント履歴と、イベントから再構築した状態を返す。
    注文が存在しなければ None。
    """
    events = await store.run(lambda tx: tx.load_events(order_id))
    if not events:
        return None
    agg = OrderAggregate.from_events(events)
    return {"replayed": agg.to_dict(), "events": events}


async def get_product(store: OrderStore, product_id: UUID) -> Product | None:
    return await store.run(lambda tx: tx.get_product(product_id))


async def list_products(store: OrderStore) -> list[Product]:
    """タイトル順。"""
    return await store.run(lambda tx: tx.list_products())


async def get_discount(store: OrderStore, discount_id: UUID) -> Discount | None:
    return await store.run(lambda tx: tx.get_discount(discount_id))


async def get_discount_by_code(store: OrderStore, code: str) -> Discount | None:
    """大文字小文字を区別せずにコードで検索する。"""
    return await store.run(lambda tx: tx.get_discount_by_code(code))


async def list_discounts(store: OrderStore) -> list[Discount]:
    return await store.run(lambda tx: tx.list_discounts())
