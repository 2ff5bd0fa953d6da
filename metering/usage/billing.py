"""
Overage biller: prices and logs consented consumption beyond the monthly quota.

Charges are append-only and created with status "pending"; invoicing and
payment transitions belong to the external billing provider. The biller never
touches usage counters.
"""

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, List, Optional

from metering.exceptions import SchemaMissing
from metering.types.usage import (
    OverageCharge,
    OverageEstimate,
    OverageStatus,
    PlanDefinition,
)

from .periods import Clock, utcnow
from .plans import get_plan
from .store import UsageStore

logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.0001")


def price_units(plan: PlanDefinition, unit_count: int) -> Decimal:
    """Price ``unit_count`` overage units at the plan's rate."""
    amount = plan.overage_rate_per_unit * unit_count
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def new_charge_id() -> str:
    return f"ovg_{uuid.uuid4().hex}"


class OverageBiller:
    """Creates overage charges from the plan's per-unit rate."""

    def __init__(
        self,
        store: UsageStore,
        plan_lookup: Callable[[str], PlanDefinition] = get_plan,
        clock: Clock = utcnow,
        on_schema_missing: Optional[Callable[[], Awaitable[object]]] = None,
    ):
        self._store = store
        self._plan_lookup = plan_lookup
        self._clock = clock
        self._on_schema_missing = on_schema_missing

    @property
    def logging_available(self) -> bool:
        return self._store.schema_status.overage_logging_available

    async def record_overage(
        self,
        user_id: str,
        tier_id: str,
        unit_count: int,
    ) -> Optional[OverageCharge]:
        """
        Record a pending overage charge.

        Call only after check_quota allowed a consented overage
        (reason MONTHLY_LIMIT_REACHED).

        Args:
            user_id: The user identifier.
            tier_id: The user's subscription tier.
            unit_count: Units consumed beyond the monthly limit.

        Returns:
            The created charge, or None when the overage log is unavailable.

        Raises:
            ConfigurationError: If ``tier_id`` is not a configured tier.
            ValueError: If ``unit_count`` is not positive.
        """
        plan = self._plan_lookup(tier_id)
        if unit_count < 1:
            raise ValueError(f"Overage unit count must be positive, got {unit_count!r}")

        amount = price_units(plan, unit_count)

        if not self.logging_available:
            logger.error(
                f"Overage log unavailable: unbilled overage for user {user_id} "
                f"({unit_count} units, {amount} at {plan.overage_rate_per_unit}/unit)"
            )
            return None

        charge = OverageCharge(
            id=new_charge_id(),
            user_id=user_id,
            amount=amount,
            unit_count=unit_count,
            date=self._clock(),
            status=OverageStatus.PENDING,
        )

        try:
            await self._store.insert_overage_charge(charge)
        except SchemaMissing as e:
            logger.error(
                f"Overage log missing while recording charge for user {user_id} "
                f"({unit_count} units, {amount}): {e.message}"
            )
            if self._on_schema_missing is not None:
                await self._on_schema_missing()
            return None

        logger.info(
            f"Overage charge {charge.id} recorded for user {user_id}: "
            f"{unit_count} units = {amount}"
        )
        return charge

    def calculate_overage(self, tier_id: str, monthly_count: int) -> OverageEstimate:
        """Units over the monthly limit for ``monthly_count`` and their price."""
        plan = self._plan_lookup(tier_id)
        if not plan.has_monthly_limit:
            units = 0
        else:
            units = max(0, monthly_count - plan.monthly_limit)
        return OverageEstimate(
            tier_id=plan.id,
            monthly_count=monthly_count,
            monthly_limit=plan.monthly_limit,
            overage_units=units,
            amount=price_units(plan, units),
        )

    async def list_charges(
        self,
        user_id: str,
        status: Optional[OverageStatus] = None,
    ) -> List[OverageCharge]:
        """A user's charges, newest first; empty when the log is unavailable."""
        if not self.logging_available:
            return []
        try:
            return await self._store.list_overage_charges(user_id, status)
        except SchemaMissing:
            return []

    async def pending_total(self, user_id: str) -> Decimal:
        """Sum of the user's charges still awaiting invoicing."""
        charges = await self.list_charges(user_id, OverageStatus.PENDING)
        return sum((c.amount for c in charges), Decimal("0"))
