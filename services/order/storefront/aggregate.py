"""
Order Service — 注文集約 (Order Aggregate)

注文ステータスの状態機械と、イベント列からの状態復元を担う。

状態遷移:
    PENDING → PROCESSING → SHIPPED → DELIVERED (終端)
    PENDING / PROCESSING / SHIPPED → CANCELLED (終端)

DELIVERED と CANCELLED からの遷移は定義しない（不正遷移として拒否）。
現在と同じステータスの再指定は no-op（副作用を二度起こさない）。
"""

from uuid import UUID

from .errors import IllegalTransition
from .models import OrderStatus

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

EDITABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})

TERMINAL_STATUSES = frozenset(s for s, nexts in TRANSITIONS.items() if not nexts)


def check_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """
    遷移可否を判定する。

    Returns:
        True  — 実際に遷移する
        False — 同じステータスの再指定 (no-op)
    Raises:
        IllegalTransition — 状態図にない遷移
    """
    if requested == current:
        return False
    if requested not in TRANSITIONS[current]:
        raise IllegalTransition(current, requested)
    return True


class OrderAggregate:
    """
    注文集約 — order_events から現在の状態を再構築する。

    注文行 (orders テーブル) が正だが、イベントログだけから同じ
    ステータス・金額・バージョンを復元できることを履歴 API で示す。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.status: OrderStatus | None = None
        self.subtotal: int = 0
        self.discount_amount: int = 0
        self.total: int = 0
        self.item_count: int = 0
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = UUID(data["order_id"])
        self.subtotal = data["subtotal"]
        self.discount_amount = data["discount_amount"]
        self.total = data["total"]
        self.item_count = len(data["items"])
        self.status = OrderStatus.PENDING

    def apply_order_status_changed(self, data: dict) -> None:
        self.status = OrderStatus(data["status"])

    def apply_order_items_replaced(self, data: dict) -> None:
        self.subtotal = data["subtotal"]
        self.discount_amount = data["discount_amount"]
        self.total = data["total"]
        self.item_count = len(data["items"])

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderStatusChanged": self.apply_order_status_changed,
            "OrderItemsReplaced": self.apply_order_items_replaced,
        }.get(event_type)
        if handler is None:
            raise ValueError(f"Unknown order event type: {event_type}")
        handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    def to_dict(self) -> dict:
        return {
            "order_id": str(self.id) if self.id else None,
            "status": self.status.value if self.status else None,
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "total": self.total,
            "item_count": self.item_count,
            "version": self.version,
        }
