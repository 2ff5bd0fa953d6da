"""
Usage cache: an advisory, time-bounded copy of usage records.

The cache only serves the read path of check_quota. Increments always go to
the store, after which the entry is overwritten with the fresh record. A
miss, an expired entry or a backend error all mean "ask the store".
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from metering.storage.redis_client import RedisClient
from metering.types.usage import UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 120


class UsageCache(ABC):
    """Interface shared by the cache backends."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UsageRecord]:
        """Return the cached record, or None on a miss."""

    @abstractmethod
    async def set(self, record: UsageRecord) -> None:
        """Store a fresh copy of ``record``."""

    @abstractmethod
    async def invalidate(self, user_id: str) -> None:
        """Drop any cached copy for ``user_id``."""


@dataclass
class CacheEntry:
    """A cached record with its expiry bookkeeping."""

    value: UsageRecord
    created_at: float
    ttl_seconds: float
    hits: int = 0

    @property
    def is_expired(self) -> bool:
        return time.monotonic() - self.created_at > self.ttl_seconds


class LocalUsageCache(UsageCache):
    """
    In-process LRU cache with TTL expiry.

    Each worker process has its own copy, so entries can be stale for up to
    the TTL when several processes serve the same user.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_size: int = 10_000,
    ):
        super().__init__(ttl_seconds)
        self.max_size = max_size
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    async def get(self, user_id: str) -> Optional[UsageRecord]:
        entry = self._entries.get(user_id)

        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired:
            del self._entries[user_id]
            self._misses += 1
            logger.debug("Usage cache miss (expired): %s", user_id)
            return None

        self._entries.move_to_end(user_id)
        entry.hits += 1
        self._hits += 1
        return entry.value.model_copy()

    async def set(self, record: UsageRecord) -> None:
        if record.user_id in self._entries:
            del self._entries[record.user_id]
        while len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Usage cache evict (LRU): %s", evicted)

        self._entries[record.user_id] = CacheEntry(
            value=record.model_copy(),
            created_at=time.monotonic(),
            ttl_seconds=self.ttl_seconds,
        )

    async def invalidate(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
        }


class RedisUsageCache(UsageCache):
    """
    Usage cache shared across processes through Redis.

    Records are stored as JSON under ``usage:<user_id>`` with SETEX so Redis
    enforces the TTL.
    """

    KEY_PREFIX = "usage:"

    def __init__(
        self,
        client: RedisClient,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ):
        super().__init__(ttl_seconds)
        self._client = client

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def get(self, user_id: str) -> Optional[UsageRecord]:
        client = await self._client.get_client()
        if client is None:
            return None
        raw = await client.get(self._key(user_id))
        if raw is None:
            return None
        return UsageRecord.model_validate_json(raw)

    async def set(self, record: UsageRecord) -> None:
        client = await self._client.get_client()
        if client is None:
            return
        await client.setex(
            self._key(record.user_id),
            max(1, int(self.ttl_seconds)),
            record.model_dump_json(),
        )

    async def invalidate(self, user_id: str) -> None:
        client = await self._client.get_client()
        if client is None:
            return
        try:
            await client.delete(self._key(user_id))
        except RedisError as e:
            logger.warning(f"Failed to invalidate usage cache for {user_id}: {e}")
