"""
Order Service — 割引適用判定 (DiscountValidator)

純粋関数。同じ入力からは常に同じ結果を返すので、
チェックアウト画面のプレビューとサーバー側の本判定の両方で使える。

判定順序は固定（最初に失敗したチェックが理由になる）:
    1. is_active            → NOT_ACTIVE
    2. 開始日時             → NOT_YET_STARTED
    3. 終了日時 (境界含む)   → EXPIRED
    4. 利用回数上限         → USAGE_LIMIT_REACHED
    5. 最低小計             → SUBTOTAL_TOO_LOW
    6. 対象商品             → PRODUCTS_NOT_ELIGIBLE
"""

from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from uuid import UUID

from .models import Discount


class RejectionReason(str, Enum):
    NOT_ACTIVE = "NOT_ACTIVE"
    NOT_YET_STARTED = "NOT_YET_STARTED"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    SUBTOTAL_TOO_LOW = "SUBTOTAL_TOO_LOW"
    PRODUCTS_NOT_ELIGIBLE = "PRODUCTS_NOT_ELIGIBLE"


def normalize_code(code: str) -> str:
    """割引コードは大文字小文字を区別しない。"""
    return code.strip().upper()


def validate(
    discount: Discount,
    now: datetime,
    subtotal: int,
    order_product_ids: Iterable[UUID],
) -> RejectionReason | None:
    """適用可能なら None、不可なら拒否理由を返す。"""
    if not discount.is_active:
        return RejectionReason.NOT_ACTIVE
    if now < discount.active_from:
        return RejectionReason.NOT_YET_STARTED
    if discount.active_until is not None and now > discount.active_until:
        return RejectionReason.EXPIRED
    if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
        return RejectionReason.USAGE_LIMIT_REACHED
    if discount.min_subtotal is not None and subtotal < discount.min_subtotal:
        return RejectionReason.SUBTOTAL_TOO_LOW
    if discount.eligible_product_ids:
        eligible = set(discount.eligible_product_ids)
        if not any(pid in eligible for pid in order_product_ids):
            return RejectionReason.PRODUCTS_NOT_ELIGIBLE
    return None
