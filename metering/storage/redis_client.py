"""
Redis client for the usage cache.

Provides a singleton Redis client with lazy connection and graceful fallback
behavior when Redis is unavailable.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from metering.config import get_settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client with lazy connection and reconnect support."""

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or get_settings().redis.redis_url or "redis://localhost:6379/0"
        self._client: Optional[redis.Redis] = None
        self._is_available: bool = False
        self._connection_error: Optional[str] = None

    async def get_client(self) -> Optional[redis.Redis]:
        """
        Get or create a Redis client instance.

        Returns:
            Redis client if available, None if connection failed.
        """
        if self._client is None:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=2.0,
                    socket_timeout=2.0,
                    retry_on_timeout=True,
                )
                await self._client.ping()
                self._is_available = True
                self._connection_error = None
                logger.info("Redis connection established successfully")
            except (redis.ConnectionError, redis.TimeoutError) as e:
                self._connection_error = f"Redis connection failed: {str(e)}"
                logger.warning(self._connection_error)
                self._is_available = False
                self._client = None

        return self._client

    async def close(self) -> None:
        """Close the Redis connection and cleanup resources."""
        if self._client:
            try:
                await self._client.aclose()
                logger.info("Redis connection closed")
            except redis.RedisError as e:
                logger.warning(f"Error closing Redis connection: {str(e)}")
            finally:
                self._client = None
                self._is_available = False

    @property
    def is_available(self) -> bool:
        """Check if Redis is currently available."""
        return self._is_available

    async def reconnect(self) -> bool:
        """Drop the current connection and try to connect again."""
        if self._client:
            await self.close()
        self._client = None
        self._is_available = False
        client = await self.get_client()
        return client is not None
