"""
Order Service — 永続化ストア

コア処理は DB を直接触らず、このモジュールのトランザクション経由で
読み書きする。1 コマンド = 1 トランザクション (Unit of Work)。

    await store.run(work)   # work(tx) が例外を投げたら何もコミットされない

実装は 2 つ:
    SqlOrderStore    — SQLAlchemy (async)。本番は PostgreSQL、テストは SQLite
    MemoryOrderStore — プロセス内の dict。ローカル開発とテスト用

競合が起きうる更新（割引の利用回数・在庫・注文ステータス）は
すべて「条件付き UPDATE + 影響行数の確認」で行う。
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TypeVar
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import config, event_store
from .aggregate import TERMINAL_STATUSES
from .discounts import normalize_code
from .errors import ConcurrencyConflict, PersistenceFailure
from .models import (
    Customer,
    Discount,
    LineItem,
    Order,
    OrderStatus,
    Product,
    ShippingOption,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TERMINAL_PARAMS = {
    "delivered": OrderStatus.DELIVERED.value,
    "cancelled": OrderStatus.CANCELLED.value,
}


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _dt(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class StoreTransaction(ABC):
    """1 トランザクション内で使える操作。"""

    # ── 商品・配送オプション ─────────────────────────

    @abstractmethod
    async def get_product(self, product_id: UUID) -> Product | None: ...

    @abstractmethod
    async def list_products(self) -> list[Product]: ...

    @abstractmethod
    async def save_product(self, product: Product) -> None: ...

    @abstractmethod
    async def update_product(self, product: Product) -> bool: ...

    @abstractmethod
    async def delete_product(self, product_id: UUID) -> bool:
        """割引の対象商品リストからも外す。"""

    @abstractmethod
    async def product_in_open_orders(self, product_id: UUID) -> bool: ...

    @abstractmethod
    async def decrement_inventory(self, product_id: UUID, quantity: int) -> bool:
        """在庫が quantity 以上ある場合のみ減らす。減らせなければ False。"""

    @abstractmethod
    async def get_shipping_option(self, option_id: UUID) -> ShippingOption | None: ...

    @abstractmethod
    async def save_shipping_option(self, option: ShippingOption) -> None: ...

    # ── 割引 ─────────────────────────────────────────

    @abstractmethod
    async def get_discount(self, discount_id: UUID) -> Discount | None: ...

    @abstractmethod
    async def get_discount_by_code(self, code: str) -> Discount | None: ...

    @abstractmethod
    async def list_discounts(self) -> list[Discount]: ...

    @abstractmethod
    async def save_discount(self, discount: Discount) -> None: ...

    @abstractmethod
    async def update_discount(self, discount: Discount) -> bool:
        """管理画面からの編集。usage_count は書き換えない。"""

    @abstractmethod
    async def delete_discount(self, discount_id: UUID) -> bool: ...

    @abstractmethod
    async def discount_in_open_orders(self, discount_id: UUID) -> bool: ...

    @abstractmethod
    async def increment_discount_usage(self, discount_id: UUID) -> bool:
        """usage_count < usage_limit の場合のみ +1。上限に達していれば False。"""

    # ── 注文 ─────────────────────────────────────────

    @abstractmethod
    async def get_order(self, order_id: UUID) -> Order | None: ...

    @abstractmethod
    async def get_order_by_payment_reference(self, reference: str) -> Order | None: ...

    @abstractmethod
    async def list_orders(self) -> list[Order]: ...

    @abstractmethod
    async def save_order(self, order: Order) -> None: ...

    @abstractmethod
    async def update_order_status(
        self,
        order_id: UUID,
        status: OrderStatus,
        expected_version: int,
        updated_at: datetime,
    ) -> bool:
        """version が expected_version のままなら更新して True。"""

    @abstractmethod
    async def replace_order_items(self, order: Order, expected_version: int) -> bool:
        """明細と金額を order の内容で置き換える。version 不一致なら False。"""

    # ── イベントログ ─────────────────────────────────

    @abstractmethod
    async def append_event(
        self, order_id: UUID, event_type: str, event_data: dict, expected_version: int
    ) -> int: ...

    @abstractmethod
    async def load_events(self, order_id: UUID) -> list[dict]: ...


class OrderStore(ABC):
    async def run(
        self,
        work: Callable[[StoreTransaction], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """
        work をトランザクション内で実行する。

        タイムアウトした場合はロールバックされ PersistenceFailure になる。
        """
        timeout = config.TRANSACTION_TIMEOUT if timeout is None else timeout
        try:
            return await asyncio.wait_for(self._run(work), timeout)
        except asyncio.TimeoutError as e:
            logger.error("Transaction timed out after %.1fs", timeout)
            raise PersistenceFailure(f"Transaction timed out after {timeout}s") from e

    @abstractmethod
    async def _run(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T: ...


# ══════════════════════════════════════════════════
#  SQLAlchemy 実装
# ══════════════════════════════════════════════════


class SqlTransaction(StoreTransaction):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ── 商品・配送オプション ─────────────────────────

    async def get_product(self, product_id: UUID) -> Product | None:
        result = await self.session.execute(
            text("SELECT id, title, price, inventory FROM products WHERE id = :id"),
            {"id": str(product_id)},
        )
        row = result.fetchone()
        if not row:
            return None
        return Product(id=row.id, title=row.title, price=row.price, inventory=row.inventory)

    async def list_products(self) -> list[Product]:
        result = await self.session.execute(
            text("SELECT id, title, price, inventory FROM products ORDER BY title, id")
        )
        return [
            Product(id=row.id, title=row.title, price=row.price, inventory=row.inventory)
            for row in result.fetchall()
        ]

    def _product_params(self, product: Product) -> dict:
        return {
            "id": str(product.id),
            "title": product.title,
            "price": product.price,
            "inventory": product.inventory,
        }

    async def save_product(self, product: Product) -> None:
        await self.session.execute(
            text("""
                INSERT INTO products (id, title, price, inventory)
                VALUES (:id, :title, :price, :inventory)
            """),
            self._product_params(product),
        )

    async def update_product(self, product: Product) -> bool:
        result = await self.session.execute(
            text("""
                UPDATE products
                SET title = :title, price = :price, inventory = :inventory
                WHERE id = :id
            """),
            self._product_params(product),
        )
        return result.rowcount == 1

    async def delete_product(self, product_id: UUID) -> bool:
        await self.session.execute(
            text("DELETE FROM discount_products WHERE product_id = :id"),
            {"id": str(product_id)},
        )
        result = await self.session.execute(
            text("DELETE FROM products WHERE id = :id"),
            {"id": str(product_id)},
        )
        return result.rowcount == 1

    async def product_in_open_orders(self, product_id: UUID) -> bool:
        result = await self.session.execute(
            text("""
                SELECT 1 FROM order_items i
                JOIN orders o ON o.id = i.order_id
                WHERE i.product_id = :id AND o.status NOT IN (:delivered, :cancelled)
                LIMIT 1
            """),
            {"id": str(product_id), **_TERMINAL_PARAMS},
        )
        return result.fetchone() is not None

    async def decrement_inventory(self, product_id: UUID, quantity: int) -> bool:
        result = await self.session.execute(
            text("""
                UPDATE products
                SET inventory = inventory - :qty
                WHERE id = :id AND inventory >= :qty
            """),
            {"qty": quantity, "id": str(product_id)},
        )
        return result.rowcount == 1

    async def get_shipping_option(self, option_id: UUID) -> ShippingOption | None:
        result = await self.session.execute(
            text("SELECT * FROM shipping_options WHERE id = :id"),
            {"id": str(option_id)},
        )
        row = result.fetchone()
        if not row:
            return None
        return ShippingOption(
            id=row.id,
            name=row.name,
            price=row.price,
            delivery_time=row.delivery_time,
            status=row.status,
        )

    async def save_shipping_option(self, option: ShippingOption) -> None:
        await self.session.execute(
            text("""
                INSERT INTO shipping_options (id, name, price, delivery_time, status)
                VALUES (:id, :name, :price, :delivery_time, :status)
            """),
            {
                "id": str(option.id),
                "name": option.name,
                "price": option.price,
                "delivery_time": option.delivery_time,
                "status": option.status.value,
            },
        )

    # ── 割引 ─────────────────────────────────────────

    def _discount_from_row(self, row, product_ids: list[UUID]) -> Discount:
        return Discount(
            id=row.id,
            code=row.code,
            description=row.description,
            kind=row.kind,
            value=row.value,
            usage_limit=row.usage_limit,
            usage_count=row.usage_count,
            active_from=_dt(row.active_from),
            active_until=_dt(row.active_until),
            is_active=bool(row.is_active),
            min_subtotal=row.min_subtotal,
            eligible_product_ids=product_ids,
        )

    async def _eligible_products(self, discount_id: str) -> list[UUID]:
        result = await self.session.execute(
            text("""
                SELECT product_id FROM discount_products
                WHERE discount_id = :id
                ORDER BY product_id
            """),
            {"id": discount_id},
        )
        return [UUID(row.product_id) for row in result.fetchall()]

    async def get_discount(self, discount_id: UUID) -> Discount | None:
        result = await self.session.execute(
            text("SELECT * FROM discounts WHERE id = :id"),
            {"id": str(discount_id)},
        )
        row = result.fetchone()
        if not row:
            return None
        return self._discount_from_row(row, await self._eligible_products(row.id))

    async def get_discount_by_code(self, code: str) -> Discount | None:
        result = await self.session.execute(
            text("SELECT * FROM discounts WHERE code_key = :key"),
            {"key": normalize_code(code)},
        )
        row = result.fetchone()
        if not row:
            return None
        return self._discount_from_row(row, await self._eligible_products(row.id))

    async def list_discounts(self) -> list[Discount]:
        result = await self.session.execute(
            text("SELECT * FROM discounts ORDER BY active_from DESC, code_key ASC")
        )
        rows = result.fetchall()
        links = await self.session.execute(
            text("SELECT discount_id, product_id FROM discount_products ORDER BY product_id")
        )
        by_discount: dict[str, list[UUID]] = {}
        for link in links.fetchall():
            by_discount.setdefault(link.discount_id, []).append(UUID(link.product_id))
        return [self._discount_from_row(row, by_discount.get(row.id, [])) for row in rows]

    def _discount_params(self, discount: Discount) -> dict:
        return {
            "id": str(discount.id),
            "code": discount.code,
            "code_key": normalize_code(discount.code),
            "description": discount.description,
            "kind": discount.kind.value,
            "value": discount.value,
            "usage_limit": discount.usage_limit,
            "active_from": _ts(discount.active_from),
            "active_until": _ts(discount.active_until),
            "is_active": discount.is_active,
            "min_subtotal": discount.min_subtotal,
        }

    async def _link_products(self, discount: Discount) -> None:
        await self.session.execute(
            text("DELETE FROM discount_products WHERE discount_id = :id"),
            {"id": str(discount.id)},
        )
        for product_id in dict.fromkeys(discount.eligible_product_ids):
            await self.session.execute(
                text("""
                    INSERT INTO discount_products (discount_id, product_id)
                    VALUES (:discount_id, :product_id)
                """),
                {"discount_id": str(discount.id), "product_id": str(product_id)},
            )

    async def save_discount(self, discount: Discount) -> None:
        params = self._discount_params(discount)
        params["usage_count"] = discount.usage_count
        await self.session.execute(
            text("""
                INSERT INTO discounts
                    (id, code, code_key, description, kind, value, usage_limit, usage_count,
                     active_from, active_until, is_active, min_subtotal)
                VALUES
                    (:id, :code, :code_key, :description, :kind, :value, :usage_limit, :usage_count,
                     :active_from, :active_until, :is_active, :min_subtotal)
            """),
            params,
        )
        await self._link_products(discount)

    async def update_discount(self, discount: Discount) -> bool:
        result = await self.session.execute(
            text("""
                UPDATE discounts SET
                    code = :code,
                    code_key = :code_key,
                    description = :description,
                    kind = :kind,
                    value = :value,
                    usage_limit = :usage_limit,
                    active_from = :active_from,
                    active_until = :active_until,
                    is_active = :is_active,
                    min_subtotal = :min_subtotal
                WHERE id = :id
            """),
            self._discount_params(discount),
        )
        if result.rowcount != 1:
            return False
        await self._link_products(discount)
        return True

    async def delete_discount(self, discount_id: UUID) -> bool:
        await self.session.execute(
            text("DELETE FROM discount_products WHERE discount_id = :id"),
            {"id": str(discount_id)},
        )
        result = await self.session.execute(
            text("DELETE FROM discounts WHERE id = :id"),
            {"id": str(discount_id)},
        )
        return result.rowcount == 1

    async def discount_in_open_orders(self, discount_id: UUID) -> bool:
        result = await self.session.execute(
            text("""
                SELECT 1 FROM orders
                WHERE discount_id = :id AND status NOT IN (:delivered, :cancelled)
                LIMIT 1
            """),
            {"id": str(discount_id), **_TERMINAL_PARAMS},
        )
        return result.fetchone() is not None

    async def increment_discount_usage(self, discount_id: UUID) -> bool:
        # チェックと加算を 1 文で行う（check-then-increment の競合を防ぐ）
        result = await self.session.execute(
            text("""
                UPDATE discounts
                SET usage_count = usage_count + 1
                WHERE id = :id
                  AND (usage_limit IS NULL OR usage_count < usage_limit)
            """),
            {"id": str(discount_id)},
        )
        return result.rowcount == 1

    # ── 注文 ─────────────────────────────────────────

    def _order_from_row(self, row, items: list[LineItem]) -> Order:
        customer = row.customer
        if isinstance(customer, str):
            customer = json.loads(customer)
        return Order(
            id=row.id,
            customer=Customer.model_validate(customer),
            items=items,
            discount_id=row.discount_id,
            subtotal=row.subtotal,
            discount_amount=row.discount_amount,
            total=row.total,
            shipping_option_id=row.shipping_option_id,
            shipping_cost=row.shipping_cost,
            status=row.status,
            payment_reference=row.payment_reference,
            version=row.version,
            created_at=_dt(row.created_at),
            updated_at=_dt(row.updated_at),
        )

    async def _items_by_order(self, order_id: str | None = None) -> dict[str, list[LineItem]]:
        query = """
            SELECT order_id, product_id, quantity, unit_price
            FROM order_items
        """
        params = {}
        if order_id is not None:
            query += " WHERE order_id = :order_id"
            params["order_id"] = order_id
        query += " ORDER BY order_id, position"
        result = await self.session.execute(text(query), params)
        items: dict[str, list[LineItem]] = {}
        for row in result.fetchall():
            items.setdefault(row.order_id, []).append(
                LineItem(product_id=row.product_id, quantity=row.quantity, unit_price=row.unit_price)
            )
        return items

    async def get_order(self, order_id: UUID) -> Order | None:
        result = await self.session.execute(
            text("SELECT * FROM orders WHERE id = :id"),
            {"id": str(order_id)},
        )
        row = result.fetchone()
        if not row:
            return None
        items = await self._items_by_order(row.id)
        return self._order_from_row(row, items.get(row.id, []))

    async def get_order_by_payment_reference(self, reference: str) -> Order | None:
        result = await self.session.execute(
            text("SELECT id FROM orders WHERE payment_reference = :ref"),
            {"ref": reference},
        )
        row = result.fetchone()
        if not row:
            return None
        return await self.get_order(UUID(row.id))

    async def list_orders(self) -> list[Order]:
        result = await self.session.execute(
            text("SELECT * FROM orders ORDER BY created_at DESC")
        )
        rows = result.fetchall()
        items = await self._items_by_order()
        return [self._order_from_row(row, items.get(row.id, [])) for row in rows]

    async def _insert_items(self, order: Order) -> None:
        for position, item in enumerate(order.items):
            await self.session.execute(
                text("""
                    INSERT INTO order_items (order_id, position, product_id, quantity, unit_price)
                    VALUES (:order_id, :position, :product_id, :quantity, :unit_price)
                """),
                {
                    "order_id": str(order.id),
                    "position": position,
                    "product_id": str(item.product_id),
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                },
            )

    async def save_order(self, order: Order) -> None:
        await self.session.execute(
            text("""
                INSERT INTO orders
                    (id, customer, discount_id, subtotal, discount_amount, total,
                     shipping_option_id, shipping_cost, status, payment_reference,
                     version, created_at, updated_at)
                VALUES
                    (:id, :customer, :discount_id, :subtotal, :discount_amount, :total,
                     :shipping_option_id, :shipping_cost, :status, :payment_reference,
                     :version, :created_at, :updated_at)
            """),
            {
                "id": str(order.id),
                "customer": order.customer.model_dump_json(),
                "discount_id": str(order.discount_id) if order.discount_id else None,
                "subtotal": order.subtotal,
                "discount_amount": order.discount_amount,
                "total": order.total,
                "shipping_option_id": str(order.shipping_option_id)
                if order.shipping_option_id
                else None,
                "shipping_cost": order.shipping_cost,
                "status": order.status.value,
                "payment_reference": order.payment_reference,
                "version": order.version,
                "created_at": _ts(order.created_at),
                "updated_at": _ts(order.updated_at),
            },
        )
        await self._insert_items(order)

    async def update_order_status(
        self,
        order_id: UUID,
        status: OrderStatus,
        expected_version: int,
        updated_at: datetime,
    ) -> bool:
        result = await self.session.execute(
            text("""
                UPDATE orders
                SET status = :status, version = version + 1, updated_at = :now
                WHERE id = :id AND version = :expected
            """),
            {
                "status": status.value,
                "now": _ts(updated_at),
                "id": str(order_id),
                "expected": expected_version,
            },
        )
        return result.rowcount == 1

    async def replace_order_items(self, order: Order, expected_version: int) -> bool:
        result = await self.session.execute(
            text("""
                UPDATE orders
                SET subtotal = :subtotal,
                    discount_amount = :discount_amount,
                    total = :total,
                    version = version + 1,
                    updated_at = :now
                WHERE id = :id AND version = :expected
            """),
            {
                "subtotal": order.subtotal,
                "discount_amount": order.discount_amount,
                "total": order.total,
                "now": _ts(order.updated_at),
                "id": str(order.id),
                "expected": expected_version,
            },
        )
        if result.rowcount != 1:
            return False
        await self.session.execute(
            text("DELETE FROM order_items WHERE order_id = :id"),
            {"id": str(order.id)},
        )
        await self._insert_items(order)
        return True

    # ── イベントログ ─────────────────────────────────

    async def append_event(
        self, order_id: UUID, event_type: str, event_data: dict, expected_version: int
    ) -> int:
        return await event_store.append_event(
            self.session, order_id, event_type, event_data, expected_version
        )

    async def load_events(self, order_id: UUID) -> list[dict]:
        return await event_store.load_events(self.session, order_id)


class SqlOrderStore(OrderStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def _run(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    return await work(SqlTransaction(session))
        except IntegrityError as e:
            # 一意制約違反 = 同時書き込みに負けた
            logger.info("Write rejected by constraint: %s", e.orig)
            raise ConcurrencyConflict("Conflicting concurrent write, please retry") from e
        except (SQLAlchemyError, OSError) as e:
            logger.exception("Persistence failure")
            raise PersistenceFailure(f"Persistence failure: {type(e).__name__}") from e


# ══════════════════════════════════════════════════
#  プロセス内実装
# ══════════════════════════════════════════════════


@dataclass
class _Tables:
    products: dict[UUID, Product] = field(default_factory=dict)
    shipping_options: dict[UUID, ShippingOption] = field(default_factory=dict)
    discounts: dict[UUID, Discount] = field(default_factory=dict)
    orders: dict[UUID, Order] = field(default_factory=dict)
    events: dict[UUID, list[dict]] = field(default_factory=dict)


class MemoryTransaction(StoreTransaction):
    """
    dict を直接読み書きする。返す値・保存する値はコピーにして
    呼び出し側からの変更がストアに漏れないようにする。
    """

    def __init__(self, tables: _Tables) -> None:
        self.tables = tables

    async def get_product(self, product_id: UUID) -> Product | None:
        product = self.tables.products.get(product_id)
        return product.model_copy() if product else None

    async def save_product(self, product: Product) -> None:
        if product.id in self.tables.products:
            raise ConcurrencyConflict(f"Product already exists: {product.id}")
        self.tables.products[product.id] = product.model_copy()

    async def list_products(self) -> list[Product]:
        products = sorted(self.tables.products.values(), key=lambda p: (p.title, str(p.id)))
        return [p.model_copy() for p in products]

    async def update_product(self, product: Product) -> bool:
        if product.id not in self.tables.products:
            return False
        self.tables.products[product.id] = product.model_copy()
        return True

    async def delete_product(self, product_id: UUID) -> bool:
        if self.tables.products.pop(product_id, None) is None:
            return False
        for discount_id, discount in self.tables.discounts.items():
            if product_id in discount.eligible_product_ids:
                remaining = [p for p in discount.eligible_product_ids if p != product_id]
                self.tables.discounts[discount_id] = discount.model_copy(
                    update={"eligible_product_ids": remaining}, deep=True
                )
        return True

    def _open_orders(self):
        return (o for o in self.tables.orders.values() if o.status not in TERMINAL_STATUSES)

    async def product_in_open_orders(self, product_id: UUID) -> bool:
        return any(
            item.product_id == product_id for order in self._open_orders() for item in order.items
        )

    async def decrement_inventory(self, product_id: UUID, quantity: int) -> bool:
        product = self.tables.products.get(product_id)
        if product is None or product.inventory < quantity:
            return False
        self.tables.products[product_id] = product.model_copy(
            update={"inventory": product.inventory - quantity}
        )
        return True

    async def get_shipping_option(self, option_id: UUID) -> ShippingOption | None:
        option = self.tables.shipping_options.get(option_id)
        return option.model_copy() if option else None

    async def save_shipping_option(self, option: ShippingOption) -> None:
        self.tables.shipping_options[option.id] = option.model_copy()

    async def get_discount(self, discount_id: UUID) -> Discount | None:
        discount = self.tables.discounts.get(discount_id)
        return discount.model_copy(deep=True) if discount else None

    async def get_discount_by_code(self, code: str) -> Discount | None:
        key = normalize_code(code)
        for discount in self.tables.discounts.values():
            if normalize_code(discount.code) == key:
                return discount.model_copy(deep=True)
        return None

    async def list_discounts(self) -> list[Discount]:
        discounts = sorted(
            self.tables.discounts.values(),
            key=lambda d: normalize_code(d.code),
        )
        discounts.sort(key=lambda d: d.active_from, reverse=True)
        return [d.model_copy(deep=True) for d in discounts]

    def _code_taken(self, discount: Discount) -> bool:
        key = normalize_code(discount.code)
        return any(
            other.id != discount.id and normalize_code(other.code) == key
            for other in self.tables.discounts.values()
        )

    async def save_discount(self, discount: Discount) -> None:
        if discount.id in self.tables.discounts or self._code_taken(discount):
            raise ConcurrencyConflict(f"Discount already exists: {discount.code}")
        self.tables.discounts[discount.id] = discount.model_copy(deep=True)

    async def update_discount(self, discount: Discount) -> bool:
        current = self.tables.discounts.get(discount.id)
        if current is None:
            return False
        if self._code_taken(discount):
            raise ConcurrencyConflict(f"Discount already exists: {discount.code}")
        self.tables.discounts[discount.id] = discount.model_copy(
            update={"usage_count": current.usage_count}, deep=True
        )
        return True

    async def delete_discount(self, discount_id: UUID) -> bool:
        return self.tables.discounts.pop(discount_id, None) is not None

    async def discount_in_open_orders(self, discount_id: UUID) -> bool:
        return any(order.discount_id == discount_id for order in self._open_orders())

    async def increment_discount_usage(self, discount_id: UUID) -> bool:
        discount = self.tables.discounts.get(discount_id)
        if discount is None:
            return False
        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            return False
        self.tables.discounts[discount_id] = discount.model_copy(
            update={"usage_count": discount.usage_count + 1}, deep=True
        )
        return True

    async def get_order(self, order_id: UUID) -> Order | None:
        order = self.tables.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_order_by_payment_reference(self, reference: str) -> Order | None:
        for order in self.tables.orders.values():
            if order.payment_reference == reference:
                return order.model_copy(deep=True)
        return None

    async def list_orders(self) -> list[Order]:
        orders = sorted(self.tables.orders.values(), key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in orders]

    async def save_order(self, order: Order) -> None:
        if order.id in self.tables.orders:
            raise ConcurrencyConflict(f"Order already exists: {order.id}")
        if order.payment_reference is not None and await self.get_order_by_payment_reference(
            order.payment_reference
        ):
            raise ConcurrencyConflict(f"Payment reference already used: {order.payment_reference}")
        self.tables.orders[order.id] = order.model_copy(deep=True)

    async def update_order_status(
        self,
        order_id: UUID,
        status: OrderStatus,
        expected_version: int,
        updated_at: datetime,
    ) -> bool:
        order = self.tables.orders.get(order_id)
        if order is None or order.version != expected_version:
            return False
        self.tables.orders[order_id] = order.model_copy(
            update={"status": status, "version": order.version + 1, "updated_at": updated_at},
            deep=True,
        )
        return True

    async def replace_order_items(self, order: Order, expected_version: int) -> bool:
        current = self.tables.orders.get(order.id)
        if current is None or current.version != expected_version:
            return False
        self.tables.orders[order.id] = current.model_copy(
            update={
                "items": list(order.items),
                "subtotal": order.subtotal,
                "discount_amount": order.discount_amount,
                "total": order.total,
                "version": current.version + 1,
                "updated_at": order.updated_at,
            },
            deep=True,
        )
        return True

    async def append_event(
        self, order_id: UUID, event_type: str, event_data: dict, expected_version: int
    ) -> int:
        events = self.tables.events.setdefault(order_id, [])
        new_version = expected_version + 1
        if any(e["version"] == new_version for e in events):
            raise ConcurrencyConflict(f"Event version {new_version} already exists for {order_id}")
        events.append(
            {
                "event_type": event_type,
                "event_data": json.loads(json.dumps(event_data, default=str)),
                "version": new_version,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        return new_version

    async def load_events(self, order_id: UUID) -> list[dict]:
        events = sorted(self.tables.events.get(order_id, []), key=lambda e: e["version"])
        return copy.deepcopy(events)


class MemoryOrderStore(OrderStore):
    """
    トランザクションはロックで直列化し、例外時はスナップショットに戻す。
    SERIALIZABLE 分離レベル相当。
    """

    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    async def _run(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                return await work(MemoryTransaction(self._tables))
            except BaseException:
                self._tables = snapshot
                raise
