"""
Order Service — FastAPI エントリーポイント

Command (POST / PUT / PATCH) はすべて commands / catalog を経由し、
1 リクエスト = 1 トランザクションで実行する。
Query (GET) は queries から読み取る。

ドメイン例外は ERROR_STATUS_CODES で HTTP ステータスに変換する:
    400 入力不正・金額改ざん・割引不可
    401 Webhook 署名不正
    404 注文・商品・割引が存在しない
    409 不正なステータス遷移・同時更新の競合 (再試行可)・使用中の商品や割引の削除
    500 永続化層の障害 (再試行可)
"""

import logging
from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, StrictInt
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import catalog, checkout, commands, config, payments, queries, schema
from .catalog import (
    DiscountCreate,
    DiscountUpdate,
    ProductCreate,
    ProductUpdate,
    ShippingOptionCreate,
)
from .checkout import OrderItemInput
from .errors import (
    ConcurrencyConflict,
    DiscountRejected,
    IllegalTransition,
    InputError,
    InvalidSignature,
    NotFound,
    PersistenceFailure,
    ReferencedByOpenOrders,
    StorefrontError,
    TamperedTotal,
)
from .models import Customer, OrderStatus
from .publisher import EventPublisher
from .reconciliation import ProvidedTotals
from .store import MemoryOrderStore, OrderStore, SqlOrderStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

if config.STORE_BACKEND == "memory":
    order_store: OrderStore = MemoryOrderStore()
else:
    order_store = SqlOrderStore(async_session)

redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    if isinstance(order_store, SqlOrderStore):
        await schema.create_all(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    logger.info("Order service started (store=%s)", config.STORE_BACKEND)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront Order Service", lifespan=lifespan)


def get_store() -> OrderStore:
    return order_store


def get_publisher() -> EventPublisher:
    return EventPublisher(redis_pool)


# ── 例外ハンドラ ─────────────────────────────────

# 親クラスも辿るので、サブクラスは個別に登録しなくてよい
ERROR_STATUS_CODES: dict[type, int] = {
    InputError: 400,
    TamperedTotal: 400,
    DiscountRejected: 400,
    InvalidSignature: 401,
    NotFound: 404,
    IllegalTransition: 409,
    ConcurrencyConflict: 409,
    ReferencedByOpenOrders: 409,
    PersistenceFailure: 500,
}


def status_code_for(exc: StorefrontError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    content = {"detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, DiscountRejected):
        content["reason"] = exc.reason.value
    if isinstance(exc, (InputError, TamperedTotal)):
        content["field"] = exc.field
    return JSONResponse(status_code=status_code_for(exc), content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """不正なペイロードは 422 ではなく 400 で返す。"""
    return JSONResponse(
        status_code=400,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "error_type": "InputError",
        },
    )


# ── Request Models ───────────────────────────────


class CreateOrderRequest(BaseModel):
    customer: Customer
    items: list[OrderItemInput]
    discount_id: UUID | None = None
    discount_code: str | None = None
    shipping_option_id: UUID | None = None
    # 画面表示用にクライアントが計算した金額（送られた場合のみ照合）
    subtotal: StrictInt | None = None
    discount_amount: StrictInt | None = None
    total: StrictInt | None = None
    shipping_cost: StrictInt | None = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class ReplaceItemsRequest(BaseModel):
    items: list[OrderItemInput]
    subtotal: StrictInt | None = None
    discount_amount: StrictInt | None = None
    total: StrictInt | None = None


class QuoteRequest(BaseModel):
    items: list[OrderItemInput]
    discount_id: UUID | None = None
    discount_code: str | None = None
    shipping_option_id: UUID | None = None


# ── Order Command Endpoints ──────────────────────


@app.post("/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    store: OrderStore = Depends(get_store),
    publisher: EventPublisher = Depends(get_publisher),
):
    """注文作成コマンド"""
    command = commands.CreateOrderCommand(
        customer=req.customer,
        items=req.items,
        discount_id=req.discount_id,
        discount_code=req.discount_code,
        shipping_option_id=req.shipping_option_id,
        provided=ProvidedTotals(
            subtotal=req.subtotal,
            discount_amount=req.discount_amount,
            total=req.total,
            shipping_cost=req.shipping_cost,
        ),
    )
    return await commands.create_order(store, publisher, command)


@app.post("/orders/{order_id}/status")
async def cmd_transition_status(
    order_id: UUID,
    req: UpdateStatusRequest,
    store: OrderStore = Depends(get_store),
    publisher: EventPublisher = Depends(get_publisher),
):
    """ステータス遷移コマンド"""
    return await commands.transition_status(store, publisher, order_id, req.status)


@app.put("/orders/{order_id}/items")
async def cmd_replace_items(
    order_id: UUID,
    req: ReplaceItemsRequest,
    store: OrderStore = Depends(get_store),
    publisher: EventPublisher = Depends(get_publisher),
):
    """明細置き換えコマンド"""
    provided = ProvidedTotals(
        subtotal=req.subtotal, discount_amount=req.discount_amount, total=req.total
    )
    return await commands.replace_items(store, publisher, order_id, req.items, provided)


# ── Order Query Endpoints ────────────────────────


@app.get("/orders")
async def query_list_orders(store: OrderStore = Depends(get_store)):
    return await queries.list_orders(store)


@app.get("/orders/{order_id}")
async def query_get_order(order_id: UUID, store: OrderStore = Depends(get_store)):
    order = await queries.get_order(store, order_id)
    if not order:
        raise NotFound("Order", order_id)
    return order


@app.get("/orders/{order_id}/events")
async def query_order_events(order_id: UUID, store: OrderStore = Depends(get_store)):
    """注文のイベント履歴と、そこから再構築した状態"""
    history = await queries.get_order_history(store, order_id)
    if not history:
        raise NotFound("Order", order_id)
    return history


# ── Checkout ─────────────────────────────────────


@app.post("/checkout/quote")
async def checkout_quote(req: QuoteRequest, store: OrderStore = Depends(get_store)):
    """カート・注文編集画面の表示用見積り（何も保存しない）"""
    return await checkout.quote(
        store,
        req.items,
        discount_id=req.discount_id,
        discount_code=req.discount_code,
        shipping_option_id=req.shipping_option_id,
    )


@app.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    store: OrderStore = Depends(get_store),
    publisher: EventPublisher = Depends(get_publisher),
):
    """決済完了通知 → 注文作成"""
    raw_body = await request.body()
    return await payments.handle_payment_event(
        store,
        publisher,
        raw_body,
        request.headers.get(payments.SIGNATURE_HEADER),
        config.PAYMENT_WEBHOOK_SECRET,
    )


# ── Catalog (管理画面) ───────────────────────────


@app.post("/products", status_code=201)
async def cmd_create_product(req: ProductCreate, store: OrderStore = Depends(get_store)):
    return await catalog.create_product(store, req)


@app.get("/products")
async def query_list_products(store: OrderStore = Depends(get_store)):
    return await queries.list_products(store)


@app.get("/products/{product_id}")
async def query_get_product(product_id: UUID, store: OrderStore = Depends(get_store)):
    product = await queries.get_product(store, product_id)
    if not product:
        raise NotFound("Product", product_id)
    return product


@app.patch("/products/{product_id}")
async def cmd_update_product(
    product_id: UUID, req: ProductUpdate, store: OrderStore = Depends(get_store)
):
    """価格変更は以降の注文にのみ反映される"""
    return await catalog.update_product(store, product_id, req)


@app.delete("/products/{product_id}")
async def cmd_delete_product(product_id: UUID, store: OrderStore = Depends(get_store)):
    await catalog.delete_product(store, product_id)
    return {"status": "deleted", "product_id": str(product_id)}


@app.post("/shipping-options", status_code=201)
async def cmd_create_shipping_option(
    req: ShippingOptionCreate, store: OrderStore = Depends(get_store)
):
    return await catalog.create_shipping_option(store, req)


@app.post("/discounts", status_code=201)
async def cmd_create_discount(req: DiscountCreate, store: OrderStore = Depends(get_store)):
    return await catalog.create_discount(store, req)


@app.get("/discounts")
async def query_list_discounts(store: OrderStore = Depends(get_store)):
    return await queries.list_discounts(store)


@app.get("/discounts/code/{code}")
async def query_discount_by_code(code: str, store: OrderStore = Depends(get_store)):
    discount = await queries.get_discount_by_code(store, code)
    if not discount:
        raise NotFound("Discount", code)
    return discount


@app.get("/discounts/{discount_id}")
async def query_get_discount(discount_id: UUID, store: OrderStore = Depends(get_store)):
    discount = await queries.get_discount(store, discount_id)
    if not discount:
        raise NotFound("Discount", discount_id)
    return discount


@app.patch("/discounts/{discount_id}")
async def cmd_update_discount(
    discount_id: UUID, req: DiscountUpdate, store: OrderStore = Depends(get_store)
):
    return await catalog.update_discount(store, discount_id, req)


@app.delete("/discounts/{discount_id}")
async def cmd_delete_discount(discount_id: UUID, store: OrderStore = Depends(get_store)):
    await catalog.delete_discount(store, discount_id)
    return {"status": "deleted", "discount_id": str(discount_id)}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
