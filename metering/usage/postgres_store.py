"""
Postgres-backed usage store.

Counters live in one row per user in ``usage_records``. Every increment is a
single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` statement, so the
database performs the add (and the daily rollover) atomically; no counter is
ever read by the client and written back.

Layout:
    usage_records(user_id PK, monthly_count, daily_count, daily_anchor_date,
                  billing_period, created_at, updated_at)
    overage_charges(id PK, user_id, amount, unit_count, date, status)
        index (user_id, date)
    usage_history(user_id, billing_period, usage_count, archived_at)
        primary key (user_id, billing_period)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Sequence

import asyncpg

from metering import db
from metering.exceptions import ErrorCode, SchemaMissing, StorageUnavailable, UserNotFound
from metering.types.usage import (
    OverageCharge,
    OverageStatus,
    UsageHistoryEntry,
    UsageRecord,
)

from .periods import Clock, as_utc, utcnow
from .store import HISTORY_TABLE, UsageStore

logger = logging.getLogger(__name__)

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS usage_records (
    user_id TEXT PRIMARY KEY,
    monthly_count INTEGER NOT NULL DEFAULT 0 CHECK (monthly_count >= 0),
    daily_count INTEGER NOT NULL DEFAULT 0 CHECK (daily_count >= 0),
    daily_anchor_date DATE,
    billing_period TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS overage_charges (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount NUMERIC(12, 4) NOT NULL CHECK (amount >= 0),
    unit_count INTEGER NOT NULL CHECK (unit_count > 0),
    date TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    status TEXT NOT NULL DEFAULT 'pending'
);

CREATE INDEX IF NOT EXISTS idx_overage_charges_user_date
    ON overage_charges (user_id, date);

CREATE TABLE IF NOT EXISTS usage_history (
    user_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    usage_count INTEGER NOT NULL,
    archived_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, billing_period)
);
"""

_SELECT_USAGE = """
    SELECT user_id, monthly_count, daily_count, daily_anchor_date, billing_period
    FROM usage_records
    WHERE user_id = $1
"""

_SELECT_USAGE_MONTHLY_ONLY = """
    SELECT user_id, monthly_count, billing_period
    FROM usage_records
    WHERE user_id = $1
"""

_CREATE_USAGE = """
    INSERT INTO usage_records (user_id, monthly_count, billing_period, created_at, updated_at)
    VALUES ($1, 0, $2, NOW(), NOW())
    ON CONFLICT (user_id) DO NOTHING
"""

_INCREMENT_USAGE = """
    INSERT INTO usage_records (
        user_id, monthly_count, daily_count, daily_anchor_date, billing_period,
        created_at, updated_at
    )
    VALUES ($1, $2, $2, $3, $4, NOW(), NOW())
    ON CONFLICT (user_id) DO UPDATE SET
        monthly_count = usage_records.monthly_count + EXCLUDED.monthly_count,
        daily_count = CASE
            WHEN usage_records.daily_anchor_date = EXCLUDED.daily_anchor_date
                THEN usage_records.daily_count + EXCLUDED.daily_count
            ELSE EXCLUDED.daily_count
        END,
        daily_anchor_date = EXCLUDED.daily_anchor_date,
        updated_at = NOW()
    RETURNING user_id, monthly_count, daily_count, daily_anchor_date, billing_period
"""

_INCREMENT_USAGE_MONTHLY_ONLY = """
    INSERT INTO usage_records (user_id, monthly_count, billing_period, created_at, updated_at)
    VALUES ($1, $2, $3, NOW(), NOW())
    ON CONFLICT (user_id) DO UPDATE SET
        monthly_count = usage_records.monthly_count + EXCLUDED.monthly_count,
        updated_at = NOW()
    RETURNING user_id, monthly_count, billing_period
"""

_ARCHIVE_USAGE = """
    INSERT INTO usage_history (user_id, billing_period, usage_count, archived_at)
    SELECT user_id, billing_period, monthly_count, $2
    FROM usage_records
    WHERE billing_period <> $1
      AND monthly_count > 0
    ON CONFLICT (user_id, billing_period) DO UPDATE SET
        usage_count = EXCLUDED.usage_count,
        archived_at = EXCLUDED.archived_at
"""

_RESET_MONTHLY = """
    UPDATE usage_records
    SET monthly_count = 0,
        billing_period = $1,
        updated_at = NOW()
    WHERE billing_period <> $1
"""

_INSERT_OVERAGE = """
    INSERT INTO overage_charges (id, user_id, amount, unit_count, date, status)
    VALUES ($1, $2, $3, $4, $5, $6)
"""

_SELECT_HAS_COLUMNS = """
    SELECT COUNT(*)::int AS found
    FROM information_schema.columns
    WHERE table_schema = current_schema()
      AND table_name = $1
      AND column_name = ANY($2::text[])
"""

# Connection-level failures that make the store unreachable.
_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.PostgresConnectionError,
)

_SCHEMA_ERRORS = (
    asyncpg.exceptions.UndefinedTableError,
    asyncpg.exceptions.UndefinedColumnError,
)


def _row_to_record(row) -> UsageRecord:
    keys = set(row.keys())
    return UsageRecord(
        user_id=row["user_id"],
        monthly_count=int(row["monthly_count"] or 0),
        daily_count=int(row["daily_count"] or 0) if "daily_count" in keys else 0,
        daily_anchor_date=row["daily_anchor_date"] if "daily_anchor_date" in keys else None,
        billing_period=row["billing_period"],
    )


def _parse_command_count(status: Optional[str]) -> int:
    """Extract the row count from an asyncpg status string such as 'UPDATE 3'."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class PostgresUsageStore(UsageStore):
    """Usage store backed by Postgres through the shared asyncpg pool."""

    def __init__(self, clock: Clock = utcnow):
        super().__init__(clock)
        logger.info("Usage store initialized with Postgres")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and classify backend failures."""
        try:
            async with db.connection() as conn:
                yield conn
        except _SCHEMA_ERRORS as e:
            raise SchemaMissing(
                getattr(e, "table_name", None) or getattr(e, "column_name", None),
                internal_message=str(e),
            ) from e
        except asyncpg.exceptions.ForeignKeyViolationError as e:
            raise UserNotFound(internal_message=str(e)) from e
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(
                error_code=ErrorCode.CONNECTION_ERROR,
                internal_message=str(e),
            ) from e
        except asyncpg.PostgresError as e:
            # Shutdown, statement timeout, read-only failover and the rest
            raise StorageUnavailable(
                internal_message=f"{type(e).__name__}: {e}",
            ) from e

    async def create_schema(self) -> None:
        """Create the tables and indexes if they do not exist."""
        async with self._connection() as conn:
            await conn.execute(SCHEMA_DDL)
        logger.info("Usage metering schema ensured")

    async def get_usage(self, user_id: str) -> UsageRecord:
        self._validate_user_id(user_id)
        select = _SELECT_USAGE if self.daily_tracking_enabled else _SELECT_USAGE_MONTHLY_ONLY

        async with self._connection() as conn:
            row = await conn.fetchrow(select, user_id)
            if row is None:
                await conn.execute(_CREATE_USAGE, user_id, self._current_period())
                row = await conn.fetchrow(select, user_id)

        if row is None:
            raise UserNotFound(user_id)
        return _row_to_record(row)

    async def increment_usage(self, user_id: str, qty: int = 1) -> UsageRecord:
        self._validate_user_id(user_id)
        self._validate_quantity(qty)

        async with self._connection() as conn:
            if self.daily_tracking_enabled:
                row = await conn.fetchrow(
                    _INCREMENT_USAGE,
                    user_id,
                    qty,
                    self._today(),
                    self._current_period(),
                )
            else:
                row = await conn.fetchrow(
                    _INCREMENT_USAGE_MONTHLY_ONLY,
                    user_id,
                    qty,
                    self._current_period(),
                )

        if row is None:
            raise StorageUnavailable(internal_message=f"increment returned no row for {user_id}")
        return _row_to_record(row)

    async def reset_monthly(self, billing_period: str) -> int:
        archive = self.schema_status.usage_history_available

        async with self._connection() as conn:
            async with conn.transaction():
                if archive:
                    await conn.execute(_ARCHIVE_USAGE, billing_period, as_utc(self._clock()))
                status = await conn.execute(_RESET_MONTHLY, billing_period)

        reset_count = _parse_command_count(status)
        logger.info(f"Reset {reset_count} monthly usage counters for period {billing_period}")
        return reset_count

    async def insert_overage_charge(self, charge: OverageCharge) -> OverageCharge:
        async with self._connection() as conn:
            await conn.execute(
                _INSERT_OVERAGE,
                charge.id,
                charge.user_id,
                charge.amount,
                charge.unit_count,
                as_utc(charge.date),
                charge.status.value,
            )
        return charge

    async def list_overage_charges(
        self,
        user_id: str,
        status: Optional[OverageStatus] = None,
    ) -> List[OverageCharge]:
        query = """
            SELECT id, user_id, amount, unit_count, date, status
            FROM overage_charges
            WHERE user_id = $1
        """
        args: list = [user_id]
        if status is not None:
            query += " AND status = $2"
            args.append(status.value)
        query += " ORDER BY date DESC"

        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)

        return [
            OverageCharge(
                id=row["id"],
                user_id=row["user_id"],
                amount=row["amount"],
                unit_count=row["unit_count"],
                date=row["date"],
                status=OverageStatus(row["status"]),
            )
            for row in rows or []
        ]

    async def get_usage_history(self, user_id: str) -> List[UsageHistoryEntry]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT user_id, billing_period, usage_count, archived_at
                FROM {HISTORY_TABLE}
                WHERE user_id = $1
                ORDER BY billing_period DESC
                """,
                user_id,
            )
        return [
            UsageHistoryEntry(
                user_id=row["user_id"],
                billing_period=row["billing_period"],
                usage_count=row["usage_count"],
                archived_at=row["archived_at"],
            )
            for row in rows or []
        ]

    async def has_columns(self, table: str, columns: Sequence[str]) -> bool:
        async with self._connection() as conn:
            found = await conn.fetchval(_SELECT_HAS_COLUMNS, table, list(columns))
        return int(found or 0) == len(set(columns))

    async def can_select(self, table: str, columns: Sequence[str]) -> bool:
        # Identifiers come from module constants, never from user input.
        query = f"SELECT {', '.join(columns)} FROM {table} LIMIT 0"
        try:
            async with self._connection() as conn:
                await conn.fetch(query)
        except SchemaMissing:
            return False
        return True

    async def close(self) -> None:
        await db.close_pool()
