"""
Async Postgres helpers for the usage store.

A single asyncpg pool is created lazily from the configured DSN and shared by
every store call.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from metering.config import get_settings
from metering.exceptions import ErrorCode, StorageUnavailable

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None


def get_database_url() -> Optional[str]:
    return get_settings().database.dsn


def is_database_configured() -> bool:
    return bool(get_database_url())


async def get_pool() -> Optional[asyncpg.Pool]:
    global _pool
    if _pool is not None:
        return _pool

    dsn = get_database_url()
    if not dsn:
        return None

    settings = get_settings().database

    # If you're connecting via a PgBouncer pooler, prepared statements can break.
    # Disabling the statement cache keeps behavior consistent for both direct and pooled URLs.
    _pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=settings.database_pool_min_size,
        max_size=settings.database_pool_max_size,
        statement_cache_size=0,
    )

    logger.info(
        "Postgres pool initialized (min=%s max=%s)",
        settings.database_pool_min_size,
        settings.database_pool_max_size,
    )
    return _pool


@asynccontextmanager
async def connection() -> AsyncIterator[asyncpg.Connection]:
    """
    Acquire a pooled connection.

    Raises:
        StorageUnavailable: If no database is configured.
    """
    pool = await get_pool()
    if pool is None:
        raise StorageUnavailable(
            "Usage database is not configured",
            error_code=ErrorCode.CONNECTION_ERROR,
        )
    async with pool.acquire() as conn:
        yield conn


async def close_pool() -> None:
    """Close the global asyncpg pool (used during graceful shutdown)."""
    global _pool
    if _pool is None:
        return
    try:
        await _pool.close()
    finally:
        _pool = None
