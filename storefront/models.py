"""
Storefront — ドメインモデル

ドキュメント DB のレコードに相当する。
金額は Decimal で扱い、保存時は小数 2 桁の文字列にする。
"""

import time
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field

CENTS = Decimal("0.01")


def now_ms() -> int:
    """作成順ソートに使うエポックミリ秒"""
    return int(time.time() * 1000)


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Role(str, Enum):
    ROOT = "root"
    SELLER = "seller"
    CUSTOMER = "customer"


class Store(BaseModel):
    store_id: str
    name: str
    owner_email: str | None = None
    owner_phone: str | None = None
    vpa: str
    merchant_name: str
    created_at: int = 0


class Product(BaseModel):
    id: str
    store_id: str
    name: str
    price: Decimal
    unit: str
    description: str = ""
    image_url: str = ""
    created_at: int = 0


class ProductSnapshot(BaseModel):
    """注文時点の商品情報。以後の商品編集には追従しない。"""
    id: str
    name: str
    price: Decimal
    unit: str = ""


class LineItem(BaseModel):
    product: ProductSnapshot
    quantity: int = Field(ge=1)

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.product.price * self.quantity)


class CustomerDetails(BaseModel):
    name: str
    address: str
    contact: str


class Order(BaseModel):
    id: str
    store_id: str
    user_id: str | None = None
    order_ref: str
    customer: CustomerDetails
    line_items: list[LineItem]
    total_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    tracking_number: str | None = None
    created_at: int = 0
    updated_at: int = 0


class Identity(BaseModel):
    """ID プロバイダが検証したトークンの中身"""
    uid: str
    email: str | None = None
    phone_number: str | None = None
    name: str | None = None
    picture: str | None = None


class User(BaseModel):
    """
    セッションごとに導出される利用者。永続化しない。
    認証イベントのたびに Identity Resolver で再計算する。
    """
    id: str
    name: str
    email: str | None = None
    phone_number: str | None = None
    role: Role = Role.CUSTOMER
    managed_store_id: str | None = None
    avatar: str | None = None


class PlacedOrder(BaseModel):
    """注文作成の結果。payment_url に遷移して UPI アプリで支払う。"""
    order: Order
    payment_url: str
