"""
Storefront — ドメインモデル

ドキュメントストアの各コレクションに対応する pydantic モデル。
ストアには JSON として保存され、リポジトリ層でこのモデルに復元される
(日時はここで datetime に正規化される)。
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """タイムゾーンなしの日時は UTC とみなす。"""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ProductStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    OUT_OF_STOCK = "OutOfStock"


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class Product(BaseModel):
    id: str
    name: str
    price: float = Field(ge=0)
    stock: int = Field(ge=0)
    status: ProductStatus = ProductStatus.ACTIVE
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CartLine(BaseModel):
    """カート明細。price は追加時点の商品価格のスナップショット。"""
    id: str
    product_id: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    added_at: datetime = Field(default_factory=utcnow)


class Cart(BaseModel):
    user_id: str
    items: list[CartLine] = []
    total: float = 0
    updated_at: datetime = Field(default_factory=utcnow)

    def recompute_total(self) -> None:
        self.total = sum(line.price * line.quantity for line in self.items)
        self.updated_at = utcnow()


class OrderItem(BaseModel):
    """注文明細。作成後は変更しない凍結コピー"""
    product_id: str
    name: str
    price: float
    quantity: int
    total: float


class Address(BaseModel):
    id: str
    user_id: str
    type: str = "shipping"
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    address_line1: str = ""
    address_line2: str | None = None
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""
    is_default: bool = False


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    items: list[OrderItem]
    subtotal: float
    shipping: float
    tax: float
    total: float
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: str
    shipping_address: Address
    billing_address: Address | None = None
    restocked: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    id: str
    email: str
    name: str | None = None
    role: str = "user"


class Session(BaseModel):
    id: str
    token: str
    user_id: str
    expires_at: datetime
