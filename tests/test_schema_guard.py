"""
Tests for the Schema Guard probe chains.
"""

import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from metering.exceptions import StorageUnavailable
from metering.usage.schema_guard import Feature, Probe, ProbeChain, SchemaGuard
from metering.usage.store import (
    OVERAGE_COLUMNS,
    OVERAGE_TABLE,
    USAGE_COLUMNS,
    USAGE_TABLE,
    InMemoryUsageStore,
)


class TestProbeChain(unittest.IsolatedAsyncioTestCase):
    """Tests for ordered probe strategies."""

    async def test_stops_at_first_success(self):
        first = AsyncMock(return_value=True)
        second = AsyncMock(return_value=True)
        chain = ProbeChain(Feature.DAILY_TRACKING, [Probe("a", first), Probe("b", second)])

        self.assertTrue(await chain.run(InMemoryUsageStore()))
        second.assert_not_awaited()

    async def test_falls_through_failures_and_errors(self):
        failing = AsyncMock(return_value=False)
        erroring = AsyncMock(side_effect=RuntimeError("catalog not readable"))
        passing = AsyncMock(return_value=True)
        chain = ProbeChain(
            Feature.OVERAGE_LOGGING,
            [Probe("a", failing), Probe("b", erroring), Probe("c", passing)],
        )

        self.assertTrue(await chain.run(InMemoryUsageStore()))
        passing.assert_awaited_once()

    async def test_disabled_probes_are_skipped(self):
        probe = AsyncMock(return_value=True)
        chain = ProbeChain(Feature.USAGE_HISTORY, [Probe("a", probe, enabled=False)])

        self.assertFalse(await chain.run(InMemoryUsageStore()))
        probe.assert_not_awaited()

    async def test_unreachable_store_is_not_reported_as_missing(self):
        unreachable = AsyncMock(side_effect=StorageUnavailable())
        missing = AsyncMock(return_value=False)
        chain = ProbeChain(
            Feature.DAILY_TRACKING,
            [Probe("a", unreachable), Probe("b", missing)],
        )

        with self.assertRaises(StorageUnavailable):
            await chain.run(InMemoryUsageStore())
        missing.assert_awaited_once()

    async def test_later_success_wins_over_unreachable_check(self):
        unreachable = AsyncMock(side_effect=StorageUnavailable())
        passing = AsyncMock(return_value=True)
        chain = ProbeChain(
            Feature.DAILY_TRACKING,
            [Probe("a", unreachable), Probe("b", passing)],
        )

        self.assertTrue(await chain.run(InMemoryUsageStore()))


class TestSchemaGuard(unittest.IsolatedAsyncioTestCase):
    """Tests for verify() against simulated schemas."""

    async def test_full_schema(self):
        store = InMemoryUsageStore()
        status = await SchemaGuard(store).verify()
        self.assertTrue(status.daily_tracking_available)
        self.assertTrue(status.overage_logging_available)
        self.assertTrue(status.usage_history_available)
        self.assertIsNotNone(status.checked_at)

    async def test_missing_structures_disable_features(self):
        store = InMemoryUsageStore(tables={
            USAGE_TABLE: USAGE_COLUMNS,
            OVERAGE_TABLE: OVERAGE_COLUMNS,
        })
        guard = SchemaGuard(store)

        with self.assertLogs("metering.usage.schema_guard", level="WARNING"):
            status = await guard.verify()

        self.assertFalse(status.daily_tracking_available)
        self.assertTrue(status.overage_logging_available)
        self.assertFalse(status.usage_history_available)
        self.assertFalse(store.daily_tracking_enabled)
        self.assertIs(guard.status, status)

        record = await store.increment_usage("user-1")
        self.assertEqual(record.monthly_count, 1)
        self.assertEqual(record.daily_count, 0)

    async def test_verify_never_raises(self):
        store = InMemoryUsageStore()
        store.has_columns = AsyncMock(side_effect=ConnectionError("down"))
        store.can_select = AsyncMock(side_effect=ConnectionError("down"))

        status = await SchemaGuard(store).verify()

        self.assertFalse(status.daily_tracking_available)
        self.assertFalse(status.overage_logging_available)

    async def test_catalog_probe_can_be_disabled(self):
        store = InMemoryUsageStore()
        store.has_columns = AsyncMock(return_value=False)
        guard = SchemaGuard(store)
        guard.set_probe_enabled(Feature.DAILY_TRACKING, "catalog:usage_records", False)

        status = await guard.verify()

        self.assertTrue(status.daily_tracking_available)
        self.assertEqual(store.has_columns.await_count, 2)

    async def test_checked_at_uses_injected_clock(self):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        status = await SchemaGuard(InMemoryUsageStore(), clock=lambda: now).verify()
        self.assertEqual(status.checked_at, now)

    def test_unknown_probe_name(self):
        guard = SchemaGuard(InMemoryUsageStore())
        with self.assertRaises(KeyError):
            guard.set_probe_enabled(Feature.DAILY_TRACKING, "nope", False)


class TestSchemaGuardDuringOutage(unittest.IsolatedAsyncioTestCase):
    """An unreachable store must not switch features off."""

    def _make_unreachable(self, store):
        store.has_columns = AsyncMock(side_effect=StorageUnavailable())
        store.can_select = AsyncMock(side_effect=StorageUnavailable())

    def _make_reachable(self, store):
        del store.has_columns
        del store.can_select

    async def test_outage_at_startup_keeps_features_enabled(self):
        store = InMemoryUsageStore()
        guard = SchemaGuard(store)
        self._make_unreachable(store)

        with self.assertLogs("metering.usage.schema_guard", level="WARNING"):
            status = await guard.verify()

        self.assertTrue(status.daily_tracking_available)
        self.assertTrue(status.overage_logging_available)
        self.assertTrue(status.usage_history_available)
        self.assertFalse(status.verified)
        self.assertTrue(store.daily_tracking_enabled)
        self.assertTrue(guard.needs_verification)

    async def test_pending_check_reruns_after_recovery(self):
        store = InMemoryUsageStore(tables={
            USAGE_TABLE: USAGE_COLUMNS,
            OVERAGE_TABLE: OVERAGE_COLUMNS,
        })
        guard = SchemaGuard(store)
        self._make_unreachable(store)
        await guard.verify()

        self._make_reachable(store)
        await guard.verify_if_pending()

        self.assertTrue(guard.status.verified)
        self.assertFalse(guard.needs_verification)
        self.assertFalse(guard.status.daily_tracking_available)
        self.assertTrue(guard.status.overage_logging_available)

    async def test_outage_keeps_previously_detected_reduced_schema(self):
        store = InMemoryUsageStore(tables={
            USAGE_TABLE: USAGE_COLUMNS,
            OVERAGE_TABLE: OVERAGE_COLUMNS,
        })
        guard = SchemaGuard(store)
        await guard.verify()
        self._make_unreachable(store)

        status = await guard.verify()

        self.assertFalse(status.daily_tracking_available)
        self.assertTrue(status.overage_logging_available)
        self.assertFalse(status.verified)

    async def test_verify_if_pending_is_noop_when_verified(self):
        store = InMemoryUsageStore()
        guard = SchemaGuard(store)
        await guard.verify()
        store.has_columns = AsyncMock(return_value=True)

        await guard.verify_if_pending()

        store.has_columns.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
