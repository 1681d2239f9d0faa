"""テスト共通のフィクスチャとデータ投入ヘルパー"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import schema
from storefront.models import (
    Customer,
    Discount,
    DiscountKind,
    LineItem,
    Product,
    ShippingOption,
    ShippingStatus,
)
from storefront.publisher import EventPublisher
from storefront.store import MemoryOrderStore, SqlOrderStore

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class RecordingPublisher(EventPublisher):
    """Redis の代わりに発行されたイベントを記録する。"""

    def __init__(self) -> None:
        super().__init__(None)
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def memory_store():
    return MemoryOrderStore()


@pytest.fixture
async def sql_store():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await schema.create_all(engine)
    yield SqlOrderStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
async def store(request):
    """メモリ版と SQL 版の両方のストアで同じテストを実行する。"""
    if request.param == "memory":
        yield MemoryOrderStore()
        return
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await schema.create_all(engine)
    yield SqlOrderStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def customer():
    return Customer(
        first_name="Ada",
        last_name="Obi",
        email="ada@example.com",
        phone="+2348000000000",
        address="1 Marina Road",
        city="Lagos",
        state="Lagos",
        postal_code="101001",
        country="NG",
    )


def item(price: int, quantity: int) -> LineItem:
    return LineItem(product_id=uuid4(), quantity=quantity, unit_price=price)


def make_discount(**overrides) -> Discount:
    fields = {
        "id": uuid4(),
        "code": f"CODE{uuid4().hex[:6].upper()}",
        "kind": DiscountKind.PERCENTAGE,
        "value": 10,
        "usage_limit": None,
        "usage_count": 0,
        "active_from": NOW - timedelta(days=1),
        "active_until": None,
        "is_active": True,
        "min_subtotal": None,
        "eligible_product_ids": [],
    }
    fields.update(overrides)
    return Discount(**fields)


async def seed_product(store, price: int = 1000, inventory: int = 10, title: str = "Oud") -> Product:
    product = Product(id=uuid4(), title=title, price=price, inventory=inventory)
    await store.run(lambda tx: tx.save_product(product))
    return product


async def seed_discount(store, **overrides) -> Discount:
    discount = make_discount(**overrides)
    await store.run(lambda tx: tx.save_discount(discount))
    return discount


async def seed_shipping(store, price: int = 1500, status=ShippingStatus.ACTIVE) -> ShippingOption:
    option = ShippingOption(id=uuid4(), name="Standard", price=price, status=status)
    await store.run(lambda tx: tx.save_shipping_option(option))
    return option
