"""
Change broadcasting for downstream consumers.

Publishing is fire-and-forget from the engine's point of view: callers
log publish failures and never retry inline.
"""

import logging
from typing import Optional, Protocol

import redis.asyncio as redis

from ticketsync.schemas.events import ChangeEvent

logger = logging.getLogger(__name__)


class ChangeBroadcaster(Protocol):
    async def publish(self, event: ChangeEvent) -> Optional[str]:
        ...

    async def close(self) -> None:
        ...


class RedisStreamBroadcaster:
    """Appends change events to a Redis stream with approximate trimming."""

    def __init__(self, client: redis.Redis, stream_key: str, maxlen: int = 10000):
        self.client = client
        self.stream_key = stream_key
        self.maxlen = maxlen

    @classmethod
    def from_url(cls, url: str, stream_key: str, maxlen: int = 10000) -> "RedisStreamBroadcaster":
        return cls(redis.from_url(url, decode_responses=True), stream_key, maxlen)

    async def publish(self, event: ChangeEvent) -> Optional[str]:
        message_id = await self.client.xadd(
            self.stream_key,
            event.to_stream_fields(),
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.debug(
            f"Published {event.table}:{event.action} for {event.sys_id} ({message_id})"
        )
        return message_id

    async def close(self) -> None:
        await self.client.aclose()


class LoggingBroadcaster:
    """Used when no Redis is configured; events only reach the log."""

    async def publish(self, event: ChangeEvent) -> Optional[str]:
        logger.info(
            f"Change {event.action} {event.table}/{event.sys_id} "
            f"({event.number}, state={event.state})"
        )
        return None

    async def close(self) -> None:
        return None
