"""
Order Service — 金額照合 (Reconciliation Guard)

クライアントが表示用に事前計算した金額は信用しない。
サーバー側で再計算した値と比較し、一致しなければ拒否する。
保存されるのは常にサーバー計算値。
"""

import logging

from pydantic import BaseModel, StrictInt

from .errors import TamperedTotal

logger = logging.getLogger(__name__)


class ProvidedTotals(BaseModel):
    """クライアント送信の金額。送られてこなかった項目は照合しない。"""

    subtotal: StrictInt | None = None
    discount_amount: StrictInt | None = None
    total: StrictInt | None = None
    shipping_cost: StrictInt | None = None
    amount_due: StrictInt | None = None


def reconcile(provided: ProvidedTotals | None, computed: dict[str, int]) -> None:
    if provided is None:
        return
    for field, value in provided.model_dump(exclude_none=True).items():
        expected = computed[field]
        if value != expected:
            logger.warning(
                "Tampered %s rejected: provided=%s calculated=%s",
                field,
                value,
                expected,
            )
            raise TamperedTotal(field, value, expected)
