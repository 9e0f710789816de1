"""Redis Pub/Sub へドメインイベントを発行する。"""

import json

import redis.asyncio as aioredis

from ..events import DomainEvent
from .port import EventPublisher


class RedisEventPublisher(EventPublisher):
    def __init__(self, redis: aioredis.Redis, channel: str = "commerce_events"):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: DomainEvent) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps(
                {
                    "event": event.name,
                    "type": event.type,
                    "action": event.action,
                    "customer_id": event.customer_id,
                    "timestamp": event.timestamp,
                    "source": event.source,
                    "properties": event.properties,
                },
                default=str,
            ),
        )
