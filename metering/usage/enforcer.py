"""
Quota enforcer: decides whether a metered action may proceed.

The decision runs in a fixed order: plan lookup, usage lookup (cache then
store), monthly check, daily check. Quota outcomes are returned as
QuotaDecision values; only an unknown tier raises.
"""

import logging
from decimal import Decimal
from typing import Callable, Optional

from metering.exceptions import SchemaMissing, StorageUnavailable, UserNotFound
from metering.types.usage import (
    UNLIMITED,
    PlanDefinition,
    QuotaDecision,
    QuotaReason,
    UsageRecord,
)

from .cache import UsageCache
from .periods import Clock, today, utcnow
from .plans import get_plan
from .store import UsageStore

logger = logging.getLogger(__name__)


def remaining(limit: int, used: int) -> int:
    """Units left under ``limit`` (-1 when unlimited)."""
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


class QuotaEnforcer:
    """Combines the plan registry with cached or stored usage."""

    def __init__(
        self,
        store: UsageStore,
        cache: Optional[UsageCache] = None,
        plan_lookup: Callable[[str], PlanDefinition] = get_plan,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._plan_lookup = plan_lookup
        self._clock = clock

    async def _load_usage(self, user_id: str) -> UsageRecord:
        """Read through the cache; any cache problem falls back to the store."""
        if self._cache is not None:
            try:
                cached = await self._cache.get(user_id)
                if cached is not None:
                    return cached
            except Exception as e:
                logger.debug(f"Usage cache read failed for {user_id}, using store: {e}")

        record = await self._store.get_usage(user_id)

        if self._cache is not None:
            try:
                await self._cache.set(record)
            except Exception as e:
                logger.debug(f"Usage cache write failed for {user_id}: {e}")

        return record

    async def check_quota(
        self,
        user_id: str,
        tier_id: str,
        overage_consent: bool = False,
    ) -> QuotaDecision:
        """
        Decide whether ``user_id`` may perform one more metered action.

        Args:
            user_id: The user identifier.
            tier_id: The user's subscription tier.
            overage_consent: Whether the user agreed to pay for overage.

        Returns:
            QuotaDecision. Storage outages produce allowed=True, degraded=True.

        Raises:
            ConfigurationError: If ``tier_id`` is not a configured tier.
        """
        plan = self._plan_lookup(tier_id)

        try:
            record = await self._load_usage(user_id)
        except UserNotFound:
            return QuotaDecision(
                allowed=False,
                reason=QuotaReason.USER_NOT_FOUND,
                remaining_monthly=0,
                remaining_daily=0,
            )
        except (StorageUnavailable, SchemaMissing) as e:
            logger.warning(
                f"Usage store unavailable for user {user_id}, allowing action (fail-open): {e.message}"
            )
            return QuotaDecision(allowed=True, degraded=True)

        daily_tracked = self._store.daily_tracking_enabled
        monthly_count = record.monthly_count
        daily_count = record.effective_daily_count(today(self._clock)) if daily_tracked else 0

        remaining_monthly = remaining(plan.monthly_limit, monthly_count)
        remaining_daily = remaining(plan.daily_limit, daily_count) if daily_tracked else UNLIMITED

        if plan.has_monthly_limit and monthly_count >= plan.monthly_limit:
            return QuotaDecision(
                allowed=overage_consent,
                reason=QuotaReason.MONTHLY_LIMIT_REACHED,
                remaining_monthly=0,
                remaining_daily=remaining_daily,
                monthly_count=monthly_count,
                daily_count=daily_count,
                will_cause_overage=overage_consent,
                estimated_overage_cost=plan.overage_rate_per_unit if overage_consent else Decimal("0"),
            )

        if daily_tracked and plan.has_daily_limit and daily_count >= plan.daily_limit:
            return QuotaDecision(
                allowed=False,
                reason=QuotaReason.DAILY_LIMIT_REACHED,
                remaining_monthly=remaining_monthly,
                remaining_daily=0,
                monthly_count=monthly_count,
                daily_count=daily_count,
            )

        return QuotaDecision(
            allowed=True,
            remaining_monthly=remaining_monthly,
            remaining_daily=remaining_daily,
            monthly_count=monthly_count,
            daily_count=daily_count,
        )
