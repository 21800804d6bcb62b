"""
Storefront — イベント定義と発行

コミット済みの事実を Redis Pub/Sub の order_events チャネルに発行する。
イベントは過去形で命名する。通知配信や集計はこのチャネルの購読側の責務。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class OrderPlaced(BaseModel):
    """注文が確定し在庫が引き当てられた"""
    order_id: str
    order_number: str
    user_id: str
    items: list[dict]
    total: float
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされ在庫が戻された"""
    order_id: str
    user_id: str
    restocked_items: list[dict]
    skipped_product_ids: list[str]
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """管理者が注文の状態を変更した"""
    order_id: str
    previous_status: str
    status: str
    timestamp: datetime


class EventPublisher:
    def __init__(self, redis: aioredis.Redis | None) -> None:
        self.redis = redis

    async def publish(self, event: BaseModel) -> None:
        """
        イベントを発行する。

        発行はコミット後に行う。失敗してもリクエストは失敗させない
        (注文は既に永続化されており、再試行すると二重作成になる)。
        """
        if self.redis is None:
            return
        event_type = type(event).__name__
        try:
            await self.redis.publish(
                ORDER_EVENTS_CHANNEL,
                json.dumps(
                    {"event_type": event_type, "data": event.model_dump(mode="json")},
                    default=str,
                ),
            )
        except (RedisError, OSError):
            logger.exception("Failed to publish %s", event_type)
