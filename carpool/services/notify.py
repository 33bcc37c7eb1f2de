"""
Domain events emitted after a transition commits.

The engine does not deliver anything itself: events go out on Redis pub/sub
for the SMS / socket layer to fan out. Publishing is best effort; a failure
is logged and never reverses the transition that produced the event.
"""
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from carpool.config import get_settings
from carpool.redis_client import cache_delete, get_redis, ride_cache_key
from carpool.utils import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class RideEvent:
    type: str
    ride_id: str
    request_id: str | None = None
    actor_id: str | None = None
    data: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        body = asdict(self)
        body["occurred_at"] = self.occurred_at.isoformat()
        return json.dumps(body, default=str)


class EventPublisher(Protocol):
    async def publish(self, events: Iterable[RideEvent]) -> None: ...


class RedisEventPublisher:
    def __init__(self, redis_factory: Callable[[], Awaitable[aioredis.Redis]] = get_redis):
        self._redis_factory = redis_factory

    async def publish(self, events: Iterable[RideEvent]) -> None:
        for event in events:
            try:
                redis = await self._redis_factory()
                message = event.to_json()
                await redis.publish(settings.events_channel, message)
                await redis.publish(f"carpool:ride:{event.ride_id}:events", message)
                await cache_delete(redis, ride_cache_key(event.ride_id))
            except (RedisError, OSError) as exc:
                logger.warning("Event publish failed type=%s ride=%s: %s", event.type, event.ride_id, exc)
