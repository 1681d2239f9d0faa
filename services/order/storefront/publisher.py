"""
Order Service — イベント発行

コミット済みの注文イベントを Redis Pub/Sub の order_events チャネルへ発行する。
発行はコミット後に行うので、失敗しても注文は取り消さない（ログに残す）。
イベントの正本は order_events テーブル。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from . import config

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        redis: aioredis.Redis | None,
        channel: str = config.ORDER_EVENTS_CHANNEL,
    ) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        event_type = type(event).__name__
        if self.redis is None:
            logger.debug("No Redis connection, skipping publish of %s", event_type)
            return
        try:
            await self.redis.publish(
                self.channel,
                json.dumps(
                    {
                        "event_type": event_type,
                        "data": event.model_dump(mode="json"),
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s", event_type)
