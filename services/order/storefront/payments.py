"""
Order Service — 決済 Webhook

決済ゲートウェイは支払い完了を非同期に通知してくる。
署名 (HMAC-SHA512) を検証し、charge.success を受け取ったら
メタデータから注文を作成する。決済そのものの検証はしない。

同じ決済リファレンスの再送は、2 つ目の注文を作らずに成功扱いで返す
（ゲートウェイは 2xx 以外を受け取ると再送し続けるため）。
"""

import hashlib
import hmac
import json
import logging
from uuid import UUID

from pydantic import BaseModel, StrictInt, ValidationError

from . import commands
from .checkout import OrderItemInput
from .commands import CreateOrderCommand
from .errors import (
    ConcurrencyConflict,
    DuplicatePaymentReference,
    InputError,
    InvalidSignature,
)
from .models import Customer
from .publisher import EventPublisher
from .reconciliation import ProvidedTotals
from .store import OrderStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-payment-signature"


class PaymentMetadata(BaseModel):
    customer: Customer
    items: list[OrderItemInput]
    shipping_option_id: UUID | None = None
    discount_id: UUID | None = None
    discount_code: str | None = None
    subtotal: StrictInt
    total: StrictInt
    discount_amount: StrictInt | None = None
    shipping_cost: StrictInt | None = None


class ChargeData(BaseModel):
    reference: str
    status: str
    amount: StrictInt | None = None
    metadata: PaymentMetadata | None = None


class PaymentEvent(BaseModel):
    event: str
    data: dict


def sign(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    if not secret:
        raise InvalidSignature("Payment webhook secret is not configured")
    if not signature:
        raise InvalidSignature("Missing signature")
    if not hmac.compare_digest(sign(raw_body, secret), signature):
        raise InvalidSignature("Invalid signature")


def _parse(model: type[BaseModel], payload, prefix: str):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join([prefix, *(str(part) for part in error["loc"])])
        raise InputError(field, f"{field}: {error['msg']}") from e


async def handle_payment_event(
    store: OrderStore,
    publisher: EventPublisher,
    raw_body: bytes,
    signature: str | None,
    secret: str,
) -> dict:
    try:
        verify_signature(raw_body, signature, secret)
    except InvalidSignature:
        logger.warning("Rejected payment webhook: bad signature")
        raise

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise InputError("body", "Invalid JSON in webhook body") from e

    event = _parse(PaymentEvent, payload, "body")
    if event.event != "charge.success":
        logger.info("Payment event not handled: %s", event.event)
        return {"status": "ignored", "event": event.event}

    charge = _parse(ChargeData, event.data, "data")
    if charge.status != "success":
        raise InputError("data.status", f"Payment not successful: {charge.status}")
    if charge.metadata is None:
        raise InputError("data.metadata", "No metadata in payment event")

    existing = await store.run(lambda tx: tx.get_order_by_payment_reference(charge.reference))
    if existing is not None:
        logger.info("Payment %s already processed as order %s", charge.reference, existing.id)
        return {"status": "duplicate", "order_id": str(existing.id)}

    meta = charge.metadata
    command = CreateOrderCommand(
        customer=meta.customer,
        items=meta.items,
        discount_id=meta.discount_id,
        discount_code=meta.discount_code,
        shipping_option_id=meta.shipping_option_id,
        payment_reference=charge.reference,
        provided=ProvidedTotals(
            subtotal=meta.subtotal,
            total=meta.total,
            discount_amount=meta.discount_amount,
            shipping_cost=meta.shipping_cost,
            amount_due=charge.amount,
        ),
    )
    try:
        order = await commands.create_order(store, publisher, command)
    except DuplicatePaymentReference:
        existing = await store.run(lambda tx: tx.get_order_by_payment_reference(charge.reference))
        logger.info("Payment %s processed concurrently", charge.reference)
        return {"status": "duplicate", "order_id": str(existing.id) if existing else None}
    except ConcurrencyConflict:
        # 同時再送で重複チェックをすり抜けた側は payment_reference の一意制約で負ける
        existing = await store.run(lambda tx: tx.get_order_by_payment_reference(charge.reference))
        if existing is None:
            raise
        logger.info("Payment %s processed concurrently as order %s", charge.reference, existing.id)
        return {"status": "duplicate", "order_id": str(existing.id)}

    logger.info("Order %s created from payment %s", order.id, charge.reference)
    return {"status": "created", "order_id": str(order.id)}
