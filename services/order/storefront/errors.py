"""
Order Service — 例外定義

コマンドはすべて「完全にコミット」か「何もせずに拒否」のどちらか。
拒否理由は以下の例外で表し、HTTP 層 (main.py) でステータスコードに変換する。
"""

from uuid import UUID


class StorefrontError(Exception):
    """Base exception for all order service errors."""


class InputError(StorefrontError):
    """不正な入力（数量・必須項目・ペイロード形式）。field に問題の項目名を持つ。"""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class InvalidQuantity(InputError):
    def __init__(self, field: str, quantity: int):
        self.quantity = quantity
        super().__init__(field, f"Quantity must be a positive integer, got {quantity}")


class DuplicatePaymentReference(InputError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__("payment_reference", f"Payment reference already used: {reference}")


class NotFound(StorefrontError):
    def __init__(self, kind: str, key: UUID | str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class DiscountRejected(StorefrontError):
    """DiscountValidator の拒否理由をそのまま呼び出し元へ返す。"""

    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"Discount rejected: {reason.value}")


class TamperedTotal(StorefrontError):
    """クライアント送信の金額がサーバー計算と一致しない。自動補正はしない。"""

    def __init__(self, field: str, provided: int, computed: int):
        self.field = field
        self.provided = provided
        self.computed = computed
        super().__init__(f"Provided {field} does not match calculated {field}")


class IllegalTransition(StorefrontError):
    def __init__(self, current, requested, message: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(
            message
            or f"Illegal status transition: {current.value} -> {requested.value}"
        )


class OrderNotEditable(IllegalTransition):
    def __init__(self, current):
        super().__init__(
            current, current, f"Order items cannot be edited in status {current.value}"
        )


class ConcurrencyConflict(StorefrontError):
    """条件付き更新が 0 行だった（他のトランザクションが先に勝った）。再試行可能。"""


class InsufficientInventory(ConcurrencyConflict):
    def __init__(self, product_id: UUID, quantity: int):
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(f"Insufficient inventory for product {product_id}: requested={quantity}")


class DuplicateDiscountCode(ConcurrencyConflict):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Discount code already exists: {code}")


class PersistenceFailure(StorefrontError):
    """ストアに到達できない / タイムアウト。何もコミットされていない。"""


class InvalidSignature(StorefrontError):
    pass


class ReferencedByOpenOrders(StorefrontError):
    """未完了の注文から参照されているため削除できない。"""

    def __init__(self, kind: str, key: UUID):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} is used by open orders and cannot be deleted")
