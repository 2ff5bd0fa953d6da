"""
Tests for the Postgres usage store.

asyncpg is mocked: these tests check which statements run with which
arguments and how backend errors are classified.
"""

import unittest
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg

from metering import db
from metering.config import MeteringSettings
from metering.exceptions import AccountingDeferred, ErrorCode, SchemaMissing, StorageUnavailable
from metering.types.usage import OverageCharge, OverageStatus, SchemaStatus
from metering.usage import postgres_store
from metering.usage.postgres_store import PostgresUsageStore
from metering.usage.service import MeteringService

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def fake_connection(conn):
    """Stand-in for metering.db.connection yielding ``conn``."""

    @asynccontextmanager
    async def _connection():
        yield conn

    return _connection


def usage_row(**overrides):
    row = {
        "user_id": "user-1",
        "monthly_count": 4,
        "daily_count": 2,
        "daily_anchor_date": date(2026, 3, 10),
        "billing_period": "2026-03",
    }
    row.update(overrides)
    return row


class PostgresStoreTestCase(unittest.IsolatedAsyncioTestCase):
    """Patches the pooled connection with a mock."""

    def setUp(self):
        self.conn = MagicMock()
        self.conn.fetchrow = AsyncMock()
        self.conn.fetch = AsyncMock(return_value=[])
        self.conn.fetchval = AsyncMock()
        self.conn.execute = AsyncMock()
        patcher = patch.object(db, "connection", fake_connection(self.conn))
        patcher.start()
        self.addCleanup(patcher.stop)
        self.store = PostgresUsageStore(clock=lambda: NOW)


class TestIncrement(PostgresStoreTestCase):
    """Tests for the single-statement atomic increment."""

    async def test_increment_with_daily_tracking(self):
        self.conn.fetchrow.return_value = usage_row(monthly_count=5, daily_count=3)

        record = await self.store.increment_usage("user-1", 1)

        self.conn.fetchrow.assert_awaited_once_with(
            postgres_store._INCREMENT_USAGE,
            "user-1",
            1,
            date(2026, 3, 10),
            "2026-03",
        )
        self.assertEqual(record.monthly_count, 5)
        self.assertEqual(record.daily_count, 3)

    async def test_increment_monthly_only(self):
        self.store.apply_schema_status(SchemaStatus(daily_tracking_available=False))
        self.conn.fetchrow.return_value = {
            "user_id": "user-1",
            "monthly_count": 9,
            "billing_period": "2026-03",
        }

        record = await self.store.increment_usage("user-1", 2)

        self.conn.fetchrow.assert_awaited_once_with(
            postgres_store._INCREMENT_USAGE_MONTHLY_ONLY,
            "user-1",
            2,
            "2026-03",
        )
        self.assertEqual(record.monthly_count, 9)
        self.assertEqual(record.daily_count, 0)
        self.assertIsNone(record.daily_anchor_date)

    def test_increment_statement_is_a_single_upsert(self):
        sql = postgres_store._INCREMENT_USAGE
        self.assertIn("ON CONFLICT (user_id) DO UPDATE", sql)
        self.assertIn("usage_records.monthly_count + EXCLUDED.monthly_count", sql)
        self.assertIn("RETURNING", sql)


class TestGetUsage(PostgresStoreTestCase):
    """Tests for reads with create-on-first-access."""

    async def test_existing_row(self):
        self.conn.fetchrow.return_value = usage_row()
        record = await self.store.get_usage("user-1")
        self.assertEqual(record.monthly_count, 4)
        self.conn.execute.assert_not_awaited()

    async def test_missing_row_is_created(self):
        self.conn.fetchrow.side_effect = [None, usage_row(monthly_count=0, daily_count=0, daily_anchor_date=None)]

        record = await self.store.get_usage("new-user")

        self.conn.execute.assert_awaited_once_with(postgres_store._CREATE_USAGE, "new-user", "2026-03")
        self.assertEqual(record.monthly_count, 0)


class TestResetMonthly(PostgresStoreTestCase):
    """Tests for the archive-then-reset transaction."""

    async def test_archives_then_resets(self):
        self.conn.execute.side_effect = ["INSERT 0 2", "UPDATE 3"]

        reset = await self.store.reset_monthly("2026-04")

        self.assertEqual(reset, 3)
        self.conn.transaction.assert_called_once()
        first, second = self.conn.execute.await_args_list
        self.assertEqual(first.args[0], postgres_store._ARCHIVE_USAGE)
        self.assertEqual(first.args[1], "2026-04")
        self.assertEqual(second.args, (postgres_store._RESET_MONTHLY, "2026-04"))

    async def test_skips_archive_without_history(self):
        self.store.apply_schema_status(SchemaStatus(usage_history_available=False))
        self.conn.execute.return_value = "UPDATE 0"

        self.assertEqual(await self.store.reset_monthly("2026-04"), 0)
        self.conn.execute.assert_awaited_once_with(postgres_store._RESET_MONTHLY, "2026-04")


class TestOverageCharges(PostgresStoreTestCase):
    """Tests for overage log statements."""

    async def test_insert(self):
        charge = OverageCharge(
            id="ovg_1",
            user_id="user-1",
            amount=Decimal("0.8000"),
            unit_count=10,
            date=NOW,
        )
        await self.store.insert_overage_charge(charge)
        self.conn.execute.assert_awaited_once_with(
            postgres_store._INSERT_OVERAGE,
            "ovg_1",
            "user-1",
            Decimal("0.8000"),
            10,
            NOW,
            "pending",
        )

    async def test_list_with_status_filter(self):
        self.conn.fetch.return_value = [{
            "id": "ovg_1",
            "user_id": "user-1",
            "amount": Decimal("0.16"),
            "unit_count": 2,
            "date": NOW,
            "status": "pending",
        }]

        charges = await self.store.list_overage_charges("user-1", OverageStatus.PENDING)

        query, *args = self.conn.fetch.await_args.args
        self.assertIn("AND status = $2", query)
        self.assertIn("ORDER BY date DESC", query)
        self.assertEqual(args, ["user-1", "pending"])
        self.assertEqual(charges[0].status, OverageStatus.PENDING)


class TestErrorClassification(PostgresStoreTestCase):
    """Tests for mapping asyncpg failures to engine exceptions."""

    async def test_undefined_column_is_schema_missing(self):
        self.conn.fetchrow.side_effect = asyncpg.exceptions.UndefinedColumnError(
            'column "daily_count" does not exist'
        )
        with self.assertRaises(SchemaMissing):
            await self.store.increment_usage("user-1")

    async def test_undefined_table_is_schema_missing(self):
        self.conn.fetch.side_effect = asyncpg.exceptions.UndefinedTableError(
            'relation "overage_charges" does not exist'
        )
        with self.assertRaises(SchemaMissing):
            await self.store.list_overage_charges("user-1")

    async def test_connection_refused_is_storage_unavailable(self):
        self.conn.fetchrow.side_effect = ConnectionRefusedError("connection refused")
        with self.assertRaises(StorageUnavailable) as ctx:
            await self.store.get_usage("user-1")
        self.assertEqual(ctx.exception.error_code, ErrorCode.CONNECTION_ERROR)

    async def test_server_side_failures_are_storage_unavailable(self):
        failures = [
            asyncpg.exceptions.AdminShutdownError("terminating connection due to administrator command"),
            asyncpg.exceptions.CrashShutdownError("the database system is in recovery mode"),
            asyncpg.exceptions.QueryCanceledError("canceling statement due to statement timeout"),
            asyncpg.exceptions.ReadOnlySQLTransactionError(
                "cannot execute INSERT in a read-only transaction"
            ),
        ]
        for failure in failures:
            with self.subTest(error=type(failure).__name__):
                self.conn.fetchrow.side_effect = failure
                with self.assertRaises(StorageUnavailable):
                    await self.store.increment_usage("user-1")

    async def test_schema_check_during_outage_raises_instead_of_reporting_missing(self):
        self.conn.fetch.side_effect = asyncpg.exceptions.AdminShutdownError("shutting down")
        with self.assertRaises(StorageUnavailable):
            await self.store.can_select("usage_history", ("user_id",))

    async def test_can_select_false_when_table_missing(self):
        self.conn.fetch.side_effect = asyncpg.exceptions.UndefinedTableError(
            'relation "usage_history" does not exist'
        )
        self.assertFalse(await self.store.can_select("usage_history", ("user_id",)))

    async def test_has_columns_counts_catalog_matches(self):
        self.conn.fetchval.return_value = 2
        self.assertTrue(await self.store.has_columns("usage_records", ("daily_count", "daily_anchor_date")))
        self.conn.fetchval.return_value = 1
        self.assertFalse(await self.store.has_columns("usage_records", ("daily_count", "daily_anchor_date")))


class TestUnconfiguredDatabase(unittest.IsolatedAsyncioTestCase):
    """Tests for the pool helper without a DATABASE_URL."""

    async def test_connection_raises_storage_unavailable(self):
        with self.assertRaises(StorageUnavailable):
            async with db.connection():
                pass


class TestOutageThroughService(PostgresStoreTestCase):
    """Backend shutdowns reach callers as fail-open or deferred accounting."""

    def setUp(self):
        super().setUp()
        self.service = MeteringService(
            self.store,
            settings=MeteringSettings(increment_max_attempts=2, increment_retry_base_delay=0.01),
            clock=lambda: NOW,
        )
        self.conn.fetchrow.side_effect = asyncpg.exceptions.AdminShutdownError(
            "terminating connection due to administrator command"
        )

    async def test_check_quota_fails_open(self):
        with self.assertLogs("metering.usage.enforcer", level="WARNING"):
            decision = await self.service.check_quota("user-1", "pro")

        self.assertTrue(decision.allowed)
        self.assertTrue(decision.degraded)

    async def test_record_usage_is_retried_then_deferred(self):
        with patch("metering.usage.service.asyncio.sleep", new_callable=AsyncMock):
            with self.assertRaises(AccountingDeferred) as ctx:
                await self.service.record_usage("user-1", 2)

        self.assertEqual(self.conn.fetchrow.await_count, 2)
        self.assertEqual(ctx.exception.attempts, 2)


if __name__ == "__main__":
    unittest.main()
