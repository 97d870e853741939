"""
Scheduler lock primitives.

The lock answers one question: which process dispatches due jobs this
tick. It is a key with an expiry, not a consensus protocol; a crashed
holder is only recovered when the key expires.
"""

import asyncio
import logging
import time
import uuid
from typing import Optional, Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Delete the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class DistributedLock(Protocol):
    """
    ``acquire`` returns an owner token, or None when the lock is held.
    ``release`` only clears the lock while that token still owns it.
    """
    key: str
    ttl_seconds: int

    async def acquire(self) -> Optional[str]:
        ...

    async def release(self, token: str) -> bool:
        ...


class RedisLock:
    """``SET key token NX EX ttl`` lock shared by every scheduler process."""

    def __init__(self, client: redis.Redis, key: str, ttl_seconds: int = 30):
        self.client = client
        self.key = key
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, key: str, ttl_seconds: int = 30) -> "RedisLock":
        return cls(redis.from_url(url, decode_responses=True), key, ttl_seconds)

    async def acquire(self) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.client.set(self.key, token, nx=True, ex=self.ttl_seconds)
        return token if acquired else None

    async def release(self, token: str) -> bool:
        released = await self.client.eval(_RELEASE_SCRIPT, 1, self.key, token)
        if not released:
            logger.warning(f"Lock {self.key} expired before release")
        return bool(released)

    async def close(self) -> None:
        await self.client.aclose()


class InProcessLock:
    """
    Expiring lock for single-process deployments without Redis.

    Same semantics as RedisLock, scoped to one event loop.
    """

    def __init__(self, key: str = "scheduler:lock", ttl_seconds: int = 30):
        self.key = key
        self.ttl_seconds = ttl_seconds
        self._owner: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._guard = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._expires_at is not None and self._expires_at > time.monotonic()

    async def acquire(self) -> Optional[str]:
        async with self._guard:
            if self.locked:
                return None
            self._owner = uuid.uuid4().hex
            self._expires_at = time.monotonic() + self.ttl_seconds
            return self._owner

    async def release(self, token: str) -> bool:
        async with self._guard:
            if token != self._owner or not self.locked:
                logger.warning(f"Lock {self.key} expired before release")
                return False
            self._owner = None
            self._expires_at = None
            return True

    async def close(self) -> None:
        return None
