"""
Order Service — カタログ管理 (商品・配送オプション・割引)

管理画面から呼ばれる書き込み操作。
割引の usage_count はここでは変更しない（注文作成時の加算のみ）。
"""

import logging
from typing import TypeVar
from uuid import UUID, uuid4

from pydantic import AwareDatetime, BaseModel, Field, StrictInt, ValidationError

from .discounts import normalize_code
from .errors import DuplicateDiscountCode, InputError, NotFound, ReferencedByOpenOrders
from .models import Discount, DiscountKind, Product, ShippingOption, ShippingStatus
from .store import OrderStore, StoreTransaction

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ProductCreate(BaseModel):
    title: str = Field(min_length=1)
    price: StrictInt = Field(ge=0)
    inventory: StrictInt = Field(default=0, ge=0)


class ProductUpdate(BaseModel):
    """PATCH 用。価格を変えても既存注文の明細価格は変わらない。"""

    title: str | None = Field(default=None, min_length=1)
    price: StrictInt | None = Field(default=None, ge=0)
    inventory: StrictInt | None = Field(default=None, ge=0)


class ShippingOptionCreate(BaseModel):
    name: str = Field(min_length=1)
    price: StrictInt = Field(ge=0)
    delivery_time: str = ""
    status: ShippingStatus = ShippingStatus.ACTIVE


class DiscountCreate(BaseModel):
    code: str = Field(min_length=1)
    description: str | None = None
    kind: DiscountKind
    value: StrictInt = 0
    usage_limit: StrictInt | None = Field(default=None, ge=0)
    active_from: AwareDatetime
    active_until: AwareDatetime | None = None
    is_active: bool = True
    min_subtotal: StrictInt | None = Field(default=None, ge=0)
    eligible_product_ids: list[UUID] = Field(default_factory=list)


class DiscountUpdate(BaseModel):
    """PATCH 用。送られてきた項目だけを更新する。"""

    code: str | None = Field(default=None, min_length=1)
    description: str | None = None
    kind: DiscountKind | None = None
    value: StrictInt | None = None
    usage_limit: StrictInt | None = Field(default=None, ge=0)
    active_from: AwareDatetime | None = None
    active_until: AwareDatetime | None = None
    is_active: bool | None = None
    min_subtotal: StrictInt | None = Field(default=None, ge=0)
    eligible_product_ids: list[UUID] | None = None


def _check_discount(discount: Discount) -> None:
    if discount.kind is DiscountKind.PERCENTAGE and not 1 <= discount.value <= 100:
        raise InputError("value", "Percentage discount value must be between 1 and 100")
    if discount.kind is DiscountKind.FIXED_AMOUNT and discount.value <= 0:
        raise InputError("value", "Fixed amount discount value must be positive")
    if discount.active_until is not None and discount.active_until < discount.active_from:
        raise InputError("active_until", "active_until must not be earlier than active_from")


async def _check_products_exist(tx: StoreTransaction, product_ids: list[UUID]) -> None:
    for product_id in product_ids:
        if await tx.get_product(product_id) is None:
            raise NotFound("Product", product_id)


def _merge(model: type[M], current: M, changes: dict) -> M:
    """PATCH の変更を現在値に重ねて検証し直す。"""
    try:
        return model.model_validate({**current.model_dump(), **changes})
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"])
        raise InputError(field, f"{field}: {error['msg']}") from e


async def create_product(store: OrderStore, req: ProductCreate) -> Product:
    product = Product(id=uuid4(), **req.model_dump())

    async def work(tx: StoreTransaction) -> Product:
        await tx.save_product(product)
        return product

    return await store.run(work)


async def update_product(store: OrderStore, product_id: UUID, req: ProductUpdate) -> Product:
    changes = req.model_dump(exclude_unset=True)

    async def work(tx: StoreTransaction) -> Product:
        current = await tx.get_product(product_id)
        if current is None:
            raise NotFound("Product", product_id)
        updated = _merge(Product, current, changes)
        if not await tx.update_product(updated):
            raise NotFound("Product", product_id)
        return updated

    updated = await store.run(work)
    logger.info(
        "Product %s updated: price=%d inventory=%d", updated.id, updated.price, updated.inventory
    )
    return updated


async def delete_product(store: OrderStore, product_id: UUID) -> None:
    """未完了の注文に含まれる商品は削除できない（配送完了時の在庫更新に必要）。"""

    async def work(tx: StoreTransaction) -> None:
        if await tx.get_product(product_id) is None:
            raise NotFound("Product", product_id)
        if await tx.product_in_open_orders(product_id):
            raise ReferencedByOpenOrders("Product", product_id)
        await tx.delete_product(product_id)

    await store.run(work)
    logger.info("Product %s deleted", product_id)


async def create_shipping_option(store: OrderStore, req: ShippingOptionCreate) -> ShippingOption:
    option = ShippingOption(id=uuid4(), **req.model_dump())

    async def work(tx: StoreTransaction) -> ShippingOption:
        await tx.save_shipping_option(option)
        return option

    return await store.run(work)


async def create_discount(store: OrderStore, req: DiscountCreate) -> Discount:
    discount = Discount(id=uuid4(), usage_count=0, **req.model_dump())
    _check_discount(discount)

    async def work(tx: StoreTransaction) -> Discount:
        if await tx.get_discount_by_code(discount.code) is not None:
            raise DuplicateDiscountCode(normalize_code(discount.code))
        await _check_products_exist(tx, discount.eligible_product_ids)
        await tx.save_discount(discount)
        return discount

    created = await store.run(work)
    logger.info("Discount %s created (%s)", created.code, created.kind.value)
    return created


async def update_discount(store: OrderStore, discount_id: UUID, req: DiscountUpdate) -> Discount:
    changes = req.model_dump(exclude_unset=True)

    async def work(tx: StoreTransaction) -> Discount:
        current = await tx.get_discount(discount_id)
        if current is None:
            raise NotFound("Discount", discount_id)
        updated = _merge(Discount, current, changes)
        _check_discount(updated)
        # 利用済み回数より小さい上限は設定できない (usage_count <= usage_limit)
        if updated.usage_limit is not None and updated.usage_limit < current.usage_count:
            raise InputError(
                "usage_limit",
                f"usage_limit must be at least the current usage count {current.usage_count}",
            )

        if normalize_code(updated.code) != normalize_code(current.code):
            other = await tx.get_discount_by_code(updated.code)
            if other is not None and other.id != discount_id:
                raise DuplicateDiscountCode(normalize_code(updated.code))
        await _check_products_exist(tx, updated.eligible_product_ids)

        if not await tx.update_discount(updated):
            raise NotFound("Discount", discount_id)
        return updated

    updated = await store.run(work)
    logger.info("Discount %s updated", updated.code)
    return updated


async def delete_discount(store: OrderStore, discount_id: UUID) -> None:
    """未完了の注文が使っている割引は削除できない。無効化 (is_active=false) を使う。"""

    async def work(tx: StoreTransaction) -> None:
        if await tx.get_discount(discount_id) is None:
            raise NotFound("Discount", discount_id)
        if await tx.discount_in_open_orders(discount_id):
            raise ReferencedByOpenOrders("Discount", discount_id)
        await tx.delete_discount(discount_id)

    await store.run(work)
    logger.info("Discount %s deleted", discount_id)
