"""
Plan registry: the static table of subscription tiers.

Lookups are pure and deterministic. An unknown tier is a fatal
ConfigurationError because every live user must map to a configured plan.
"""

from decimal import Decimal
from typing import Dict, List

from metering.exceptions import ConfigurationError, ErrorCode
from metering.types.usage import UNLIMITED, PlanDefinition, PlanTier

PLAN_DEFINITIONS: Dict[str, PlanDefinition] = {
    PlanTier.FREE.value: PlanDefinition(
        id=PlanTier.FREE.value,
        name="Free",
        monthly_limit=5,
        daily_limit=UNLIMITED,
        overage_rate_per_unit=Decimal("0.12"),
    ),
    PlanTier.BASIC.value: PlanDefinition(
        id=PlanTier.BASIC.value,
        name="Basic",
        monthly_limit=60,
        daily_limit=2,
        overage_rate_per_unit=Decimal("0.10"),
    ),
    PlanTier.PRO.value: PlanDefinition(
        id=PlanTier.PRO.value,
        name="Pro",
        monthly_limit=150,
        daily_limit=5,
        overage_rate_per_unit=Decimal("0.08"),
    ),
    PlanTier.AGENCY.value: PlanDefinition(
        id=PlanTier.AGENCY.value,
        name="Agency",
        monthly_limit=450,
        daily_limit=UNLIMITED,
        overage_rate_per_unit=Decimal("0.06"),
        seats_included=3,
        additional_seat_price=Decimal("6.99"),
    ),
}


def get_plan(tier_id: str) -> PlanDefinition:
    """
    Get the plan definition for a tier.

    Args:
        tier_id: Tier identifier (e.g. "pro"). PlanTier members are accepted.

    Returns:
        The immutable PlanDefinition.

    Raises:
        ConfigurationError: If the tier is not configured.
    """
    key = tier_id.value if isinstance(tier_id, PlanTier) else tier_id
    plan = PLAN_DEFINITIONS.get(key)
    if plan is None:
        raise ConfigurationError(
            f"Unknown subscription tier: {tier_id!r}",
            tier_id=str(key),
            error_code=ErrorCode.UNKNOWN_TIER,
        )
    return plan


def get_all_plans() -> List[PlanDefinition]:
    """Get all plan definitions in tier order."""
    return list(PLAN_DEFINITIONS.values())


def additional_seats(tier_id: str, total_seats: int) -> int:
    """Number of seats beyond those included in the plan."""
    plan = get_plan(tier_id)
    return max(0, total_seats - plan.seats_included)


def additional_seat_cost(tier_id: str, total_seats: int) -> Decimal:
    """Monthly price of the seats beyond those included in the plan."""
    plan = get_plan(tier_id)
    return plan.additional_seat_price * additional_seats(tier_id, total_seats)
