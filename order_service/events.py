"""
Order Service — イベント定義

イベントは過去形で命名し、不変(immutable)として扱う。
event_store への記録と Redis Pub/Sub への発行の両方に同じペイロードを使う。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class OrderPlaced(BaseModel):
    """注文が作成された(在庫引き当て・クーポン使用済み)"""
    order_id: UUID
    order_number: str
    user_id: str | None
    guest_email: str | None
    item_count: int
    total: float
    coupon_code: str | None
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが遷移した"""
    order_id: UUID
    order_number: str
    from_status: str
    to_status: str
    updated_by: str | None
    payment_status: str
    refund_amount: float
    restocked: bool
    timestamp: datetime


class OrderConfirmationRequested(BaseModel):
    """注文確認メールの送信依頼(メール送信そのものは購読側の責務)"""
    order_number: str
    recipient_email: str
    customer_name: str
    total: float
    item_count: int
    estimated_delivery: datetime | None
    timestamp: datetime
