"""
Order Service — イベント発行と通知

Redis Pub/Sub への発行はコミット後に行う「ベストエフォート」の副作用。
発行に失敗しても注文そのものは成功扱いで、ログに残すだけにする。

    order_events         OrderPlaced / OrderStatusChanged (他サービスの投影用)
    notification_events  OrderConfirmationRequested (メール送信は購読側)
"""

import asyncio
import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel

from .config import Settings, get_settings
from .domain import Order
from .events import OrderConfirmationRequested

logger = logging.getLogger(__name__)


class EventPublisher:
    """Redis Pub/Sub への発行を担当する。"""

    def __init__(self, redis: aioredis.Redis, settings: Settings | None = None):
        self.redis = redis
        self.settings = settings or get_settings()

    async def publish(self, channel: str, event_type: str, event: BaseModel) -> bool:
        """
        イベントを発行する。失敗・タイムアウトは握りつぶして False を返す。
        メッセージ形式は {"event_type": ..., "data": {...}}。
        """
        message = json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")},
            default=str,
        )
        try:
            await asyncio.wait_for(
                self.redis.publish(channel, message),
                timeout=self.settings.notification_timeout_seconds,
            )
        except Exception:
            logger.exception("Failed to publish %s to %s", event_type, channel)
            return False
        return True

    async def publish_order_event(self, event_type: str, event: BaseModel) -> bool:
        return await self.publish(self.settings.order_events_channel, event_type, event)

    async def send_order_confirmation(self, order: Order, recipient_email: str | None) -> bool:
        """注文確認の送信を依頼する。宛先が無ければ何もしない。"""
        if not recipient_email:
            logger.info("No recipient for order %s, confirmation skipped", order.order_number)
            return False

        event = OrderConfirmationRequested(
            order_number=order.order_number,
            recipient_email=recipient_email,
            customer_name=order.shipping_address.full_name,
            total=order.pricing.total,
            item_count=order.total_items,
            estimated_delivery=order.shipping.estimated_delivery,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(
            self.settings.notification_channel, "OrderConfirmationRequested", event
        )
