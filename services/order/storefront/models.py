"""
Order Service — ドメインモデル

金額はすべて最小通貨単位の int で扱う（float は使わない）。
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field


class DiscountKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class ShippingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CONDITIONAL = "CONDITIONAL"


class Product(BaseModel):
    id: UUID
    title: str
    price: int
    inventory: int = 0


class ShippingOption(BaseModel):
    id: UUID
    name: str
    price: int
    delivery_time: str = ""
    status: ShippingStatus = ShippingStatus.ACTIVE


class Discount(BaseModel):
    id: UUID
    code: str
    description: str | None = None
    kind: DiscountKind
    value: int
    usage_limit: int | None = None
    usage_count: int = 0
    active_from: datetime
    active_until: datetime | None = None
    is_active: bool = True
    min_subtotal: int | None = None
    eligible_product_ids: list[UUID] = Field(default_factory=list)


class Customer(BaseModel):
    """配送先。空欄（空白のみを含む）は受け付けない。"""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=1)


class LineItem(BaseModel):
    """注文明細。unit_price は注文時点の商品価格のスナップショット。"""

    model_config = ConfigDict(frozen=True)

    product_id: UUID
    quantity: int
    unit_price: int

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity


class Order(BaseModel):
    id: UUID
    customer: Customer
    items: list[LineItem]
    discount_id: UUID | None = None
    subtotal: int
    discount_amount: int
    total: int
    shipping_option_id: UUID | None = None
    shipping_cost: int = 0
    status: OrderStatus = OrderStatus.PENDING
    payment_reference: str | None = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def amount_due(self) -> int:
        return self.total + self.shipping_cost
