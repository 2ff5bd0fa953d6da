"""
Metering service: the caller-facing entry point of the engine.

Wires the plan registry, usage store, usage cache, quota enforcer, overage
biller, reset scheduler and schema guard together and exposes:
- check_quota: decide before a metered action
- record_usage: count the action after it succeeded (with retry)
- record_overage: bill consented overage
- get_usage_summary / list_overage_charges: read views for dashboards
- on_billing_period_boundary: monthly reset trigger

Uses Postgres when a database URL is configured and an in-memory store
otherwise; uses Redis for the cache when a Redis URL is configured.
"""

import asyncio
import logging
from decimal import Decimal
from typing import List, Optional

from metering.config import MeteringSettings, get_settings
from metering.exceptions import (
    AccountingDeferred,
    SchemaMissing,
    StorageUnavailable,
)
from metering.storage.redis_client import RedisClient
from metering.types.usage import (
    UNLIMITED,
    OverageCharge,
    OverageStatus,
    PlanDefinition,
    QuotaDecision,
    ResetReport,
    SchemaStatus,
    UsageHistoryEntry,
    UsageRecord,
    UsageSummary,
)
from metering.utils.logging import usage_context

from .billing import OverageBiller
from .cache import LocalUsageCache, RedisUsageCache, UsageCache
from .enforcer import QuotaEnforcer, remaining
from .periods import Clock, today, utcnow
from .plans import get_plan
from .postgres_store import PostgresUsageStore
from .scheduler import ResetScheduler
from .schema_guard import SchemaGuard
from .store import InMemoryUsageStore, UsageStore

logger = logging.getLogger(__name__)


def _percentage(used: int, limit: int) -> float:
    if limit == UNLIMITED or limit <= 0:
        return 0.0
    return round(min(100.0, used / limit * 100), 1)


class MeteringService:
    """Facade over the metering components."""

    def __init__(
        self,
        store: UsageStore,
        cache: Optional[UsageCache] = None,
        settings: Optional[MeteringSettings] = None,
        clock: Clock = utcnow,
        redis_client: Optional[RedisClient] = None,
    ):
        self.settings = settings or get_settings().metering
        self.store = store
        self.cache = cache
        self._clock = clock
        self._redis_client = redis_client
        self.guard = SchemaGuard(store, clock=clock)
        self.enforcer = QuotaEnforcer(store, cache, clock=clock)
        self.biller = OverageBiller(store, clock=clock, on_schema_missing=self.guard.verify)
        self.scheduler = ResetScheduler(store, clock=clock)

    async def startup(self) -> SchemaStatus:
        """Verify the storage schema before serving traffic."""
        status = await self.guard.verify()
        logger.info(
            "Metering service started "
            f"(daily_tracking={status.daily_tracking_available}, "
            f"overage_logging={status.overage_logging_available}, "
            f"usage_history={status.usage_history_available})"
        )
        return status

    async def shutdown(self) -> None:
        await self.store.close()
        if self._redis_client is not None:
            await self._redis_client.close()

    async def check_quota(
        self,
        user_id: str,
        tier_id: str,
        overage_consent: bool = False,
    ) -> QuotaDecision:
        """Decide whether the user may perform one more metered action."""
        with usage_context(user_id):
            decision = await self.enforcer.check_quota(user_id, tier_id, overage_consent)
            if not decision.degraded:
                await self.guard.verify_if_pending()
        return decision

    async def _refresh_cache(self, record: UsageRecord) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(record)
        except Exception as e:
            logger.warning(f"Usage cache refresh failed for {record.user_id}, invalidating: {e}")
            try:
                await self.cache.invalidate(record.user_id)
            except Exception as inner:
                logger.warning(f"Usage cache invalidation failed for {record.user_id}: {inner}")

    def _check_usage_alert(self, record: UsageRecord, qty: int, plan: PlanDefinition) -> None:
        if not plan.has_monthly_limit or plan.monthly_limit == 0:
            return

        threshold = self.settings.overage_alert_threshold
        before = (record.monthly_count - qty) / plan.monthly_limit * 100
        after = record.monthly_count / plan.monthly_limit * 100

        if before < threshold <= after:
            logger.warning(
                f"User {record.user_id} at {after:.1f}% of monthly limit "
                f"({record.monthly_count}/{plan.monthly_limit}, tier {plan.id})"
            )
        if record.monthly_count > plan.monthly_limit:
            logger.info(
                f"User {record.user_id} is {record.monthly_count - plan.monthly_limit} units "
                f"over the {plan.id} monthly limit"
            )

    async def record_usage(
        self,
        user_id: str,
        qty: int = 1,
        tier_id: Optional[str] = None,
    ) -> UsageRecord:
        """
        Record usage after a metered action succeeded.

        Storage outages are retried with exponential backoff. A missing
        schema structure triggers a guard re-check and an immediate retry in
        the reduced mode.

        Args:
            user_id: The user identifier.
            qty: Units consumed by the action.
            tier_id: Optional tier, enables the usage alert log.

        Returns:
            The updated usage record.

        Raises:
            AccountingDeferred: If every attempt failed.
            ConfigurationError: If tier_id is unknown. Nothing is recorded.
            UserNotFound: If the user identifier is invalid.
        """
        plan = get_plan(tier_id) if tier_id is not None else None
        with usage_context(user_id):
            return await self._record_with_retry(user_id, qty, plan)

    async def _record_with_retry(
        self,
        user_id: str,
        qty: int,
        plan: Optional[PlanDefinition],
    ) -> UsageRecord:
        max_attempts = self.settings.increment_max_attempts
        base_delay = self.settings.increment_retry_base_delay
        last_error: Optional[Exception] = None
        record: Optional[UsageRecord] = None

        for attempt in range(max_attempts):
            try:
                record = await self.store.increment_usage(user_id, qty)
                break
            except SchemaMissing as e:
                last_error = e
                logger.warning(f"Schema missing while recording usage for {user_id}, re-verifying: {e.message}")
                await self.guard.verify()
            except StorageUnavailable as e:
                last_error = e
                if attempt < max_attempts - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.info(
                        f"Retrying usage increment for {user_id} in {delay:.2f}s "
                        f"(attempt {attempt + 1}/{max_attempts})"
                    )
                    await asyncio.sleep(delay)

        if record is None:
            logger.error(
                f"Usage accounting deferred for user {user_id}: {qty} units unrecorded "
                f"after {max_attempts} attempts ({last_error})"
            )
            raise AccountingDeferred(
                user_id,
                qty,
                max_attempts,
                internal_message=str(last_error) if last_error else None,
            )

        await self._refresh_cache(record)
        await self.guard.verify_if_pending()
        if plan is not None:
            self._check_usage_alert(record, qty, plan)
        return record

    async def record_overage(
        self,
        user_id: str,
        tier_id: str,
        unit_count: int,
    ) -> Optional[OverageCharge]:
        """Bill consented overage; None when the overage log is unavailable."""
        with usage_context(user_id):
            return await self.biller.record_overage(user_id, tier_id, unit_count)

    async def list_overage_charges(
        self,
        user_id: str,
        status: Optional[OverageStatus] = None,
    ) -> List[OverageCharge]:
        return await self.biller.list_charges(user_id, status)

    async def get_usage_history(self, user_id: str) -> List[UsageHistoryEntry]:
        """Archived monthly counts; empty when the history table is unavailable."""
        if not self.store.schema_status.usage_history_available:
            return []
        try:
            return await self.store.get_usage_history(user_id)
        except SchemaMissing:
            await self.guard.verify()
            return []

    async def get_usage_summary(self, user_id: str, tier_id: str) -> UsageSummary:
        """
        Usage against the plan for dashboard display.

        Raises:
            ConfigurationError: If the tier is unknown.
            StorageUnavailable: If the store cannot be reached.
            UserNotFound: If the user identifier is invalid.
        """
        plan = get_plan(tier_id)
        record = await self.store.get_usage(user_id)
        daily_tracked = self.store.daily_tracking_enabled
        daily_used = record.effective_daily_count(today(self._clock)) if daily_tracked else 0
        daily_limit = plan.daily_limit if daily_tracked else UNLIMITED

        pending: Decimal = await self.biller.pending_total(user_id)

        return UsageSummary(
            user_id=user_id,
            tier=plan.id,
            billing_period=record.billing_period,
            monthly_used=record.monthly_count,
            monthly_limit=plan.monthly_limit,
            monthly_remaining=remaining(plan.monthly_limit, record.monthly_count),
            monthly_percentage=_percentage(record.monthly_count, plan.monthly_limit),
            daily_used=daily_used,
            daily_limit=daily_limit,
            daily_remaining=remaining(daily_limit, daily_used),
            daily_percentage=_percentage(daily_used, daily_limit),
            overage=self.biller.calculate_overage(plan.id, record.monthly_count),
            pending_overage_total=pending,
            overage_rate_per_unit=plan.overage_rate_per_unit,
            daily_tracking_available=daily_tracked,
        )

    async def on_billing_period_boundary(self) -> ResetReport:
        """Reset monthly counters for the current billing period."""
        report = await self.scheduler.on_billing_period_boundary()
        if self.cache is not None and not report.skipped and isinstance(self.cache, LocalUsageCache):
            self.cache.clear()
        return report


# Singleton instance
_metering_service: Optional[MeteringService] = None


def create_metering_service() -> MeteringService:
    """Build a service from the current settings."""
    settings = get_settings()

    store: UsageStore
    if settings.is_database_configured:
        store = PostgresUsageStore()
    else:
        logger.info("DATABASE_URL not configured, using in-memory usage store")
        store = InMemoryUsageStore()

    redis_client: Optional[RedisClient] = None
    cache: UsageCache
    if settings.is_redis_configured:
        redis_client = RedisClient(settings.redis.redis_url)
        cache = RedisUsageCache(redis_client, ttl_seconds=settings.metering.usage_cache_ttl_seconds)
    else:
        cache = LocalUsageCache(
            ttl_seconds=settings.metering.usage_cache_ttl_seconds,
            max_size=settings.metering.usage_cache_max_size,
        )

    return MeteringService(
        store,
        cache=cache,
        settings=settings.metering,
        redis_client=redis_client,
    )


def get_metering_service() -> MeteringService:
    """Get the singleton metering service instance."""
    global _metering_service
    if _metering_service is None:
        _metering_service = create_metering_service()
    return _metering_service


def reset_metering_service() -> None:
    """Drop the singleton (used by tests and after settings reloads)."""
    global _metering_service
    _metering_service = None
