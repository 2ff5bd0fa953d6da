"""Storage backends shared by the metering engine."""

from .redis_client import RedisClient

__all__ = ["RedisClient"]
