"""
Reset scheduler: monthly rollover at billing-period boundaries.

Triggered externally (cron). Daily counters need no job: the store rolls
them over lazily by comparing the anchor date on the next increment.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from metering.types.usage import ResetReport

from .periods import Clock, billing_period_for, utcnow
from .store import UsageStore

logger = logging.getLogger(__name__)


class ResetScheduler:
    """
    Runs UsageStore.reset_monthly once per billing period.

    A repeated trigger for a period that was already reset in this process is
    skipped; the store's reset is itself idempotent per period, which covers
    triggers landing on different processes.
    """

    def __init__(self, store: UsageStore, clock: Clock = utcnow):
        self._store = store
        self._clock = clock
        self._last_period: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def last_period(self) -> Optional[str]:
        return self._last_period

    async def on_billing_period_boundary(self, now: Optional[datetime] = None) -> ResetReport:
        """
        Reset monthly counters for the period containing ``now``.

        Returns:
            ResetReport with the number of users reset, or skipped=True when
            this period was already processed.
        """
        now = now or self._clock()
        period = billing_period_for(now)

        async with self._lock:
            if self._last_period == period:
                logger.info(f"Monthly reset for {period} already ran, skipping")
                return ResetReport(billing_period=period, skipped=True, completed_at=self._clock())

            users_reset = await self._store.reset_monthly(period)
            self._last_period = period

        logger.info(f"Billing period boundary processed: {period} ({users_reset} users reset)")
        return ResetReport(billing_period=period, users_reset=users_reset, completed_at=self._clock())
