"""
Storefront — 注文イベント定義

注文に起きた事実を過去形で命名し、不変として扱う。
event_store にはこれらを JSON にしたものが入る。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderPlaced(BaseModel):
    """注文が作成された (初期状態 pending)"""
    order_id: str
    store_id: str
    user_id: str | None = None
    order_ref: str
    total_amount: str
    timestamp: datetime


class OrderPaid(BaseModel):
    """seller が入金を確認した (自己申告。決済コールバックはない)"""
    order_id: str
    timestamp: datetime


class OrderConfirmed(BaseModel):
    order_id: str
    timestamp: datetime


class OrderShipped(BaseModel):
    """発送された。追跡番号が必須"""
    order_id: str
    tracking_number: str
    timestamp: datetime


class OrderDelivered(BaseModel):
    order_id: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    order_id: str
    timestamp: datetime
