"""
Pydantic models for usage metering, quota decisions and overage billing.

This module defines the data models for:
- Plan definitions (tier limits and pricing)
- Per-user usage records with lazy daily rollover
- Append-only overage charges
- Quota decisions returned to the request layer
- Schema Guard feature flags
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Sentinel for "no cap" on a monthly or daily limit.
UNLIMITED = -1


class PlanTier(str, Enum):
    """Subscription tiers known to the plan registry."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    AGENCY = "agency"


class PlanDefinition(BaseModel):
    """Immutable quota and pricing parameters for one tier."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    monthly_limit: int = Field(
        ...,
        ge=UNLIMITED,
        description="Metered actions included per billing period (-1 for unlimited)",
    )
    daily_limit: int = Field(
        default=UNLIMITED,
        ge=UNLIMITED,
        description="Pacing cap per calendar day (-1 for unlimited)",
    )
    overage_rate_per_unit: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Price per unit consumed beyond the monthly limit",
    )
    seats_included: int = Field(default=1, ge=0)
    additional_seat_price: Decimal = Field(default=Decimal("0"), ge=0)

    @property
    def has_monthly_limit(self) -> bool:
        return self.monthly_limit != UNLIMITED

    @property
    def has_daily_limit(self) -> bool:
        return self.daily_limit != UNLIMITED


class UsageRecord(BaseModel):
    """
    Consumption counters for one user.

    The stored daily_count only applies to daily_anchor_date; reads on any
    other day see an effective daily count of zero.
    """

    user_id: str
    monthly_count: int = Field(default=0, ge=0)
    daily_count: int = Field(default=0, ge=0)
    daily_anchor_date: Optional[date] = Field(
        default=None,
        description="Calendar day the daily_count applies to",
    )
    billing_period: str = Field(
        ...,
        description="Billing month this monthly_count belongs to (YYYY-MM)",
    )

    def effective_daily_count(self, today: date) -> int:
        """Daily count as seen on ``today`` (lazy rollover)."""
        if self.daily_anchor_date != today:
            return 0
        return self.daily_count


class OverageStatus(str, Enum):
    """Lifecycle of an overage charge; transitions after PENDING are external."""

    PENDING = "pending"
    INVOICED = "invoiced"
    PAID = "paid"


class OverageCharge(BaseModel):
    """Append-only log entry for consented consumption beyond the monthly quota."""

    id: str
    user_id: str
    amount: Decimal = Field(..., ge=0)
    unit_count: int = Field(..., gt=0)
    date: datetime
    status: OverageStatus = OverageStatus.PENDING


class OverageEstimate(BaseModel):
    """Units over the monthly limit and their price for a given count."""

    tier_id: str
    monthly_count: int
    monthly_limit: int
    overage_units: int = 0
    amount: Decimal = Decimal("0")


class QuotaReason(str, Enum):
    """Reason codes attached to quota decisions."""

    MONTHLY_LIMIT_REACHED = "monthly_limit_reached"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    USER_NOT_FOUND = "user_not_found"


class QuotaDecision(BaseModel):
    """
    Outcome of a quota check.

    Callers branch on ``allowed`` and ``reason``; ``degraded`` marks a
    fail-open decision taken while storage was unreachable.
    """

    allowed: bool
    reason: Optional[QuotaReason] = None
    remaining_monthly: Optional[int] = Field(
        default=None,
        description="Remaining monthly units (-1 unlimited, None unknown)",
    )
    remaining_daily: Optional[int] = Field(
        default=None,
        description="Remaining daily units (-1 unlimited, None unknown)",
    )
    degraded: bool = False
    monthly_count: Optional[int] = None
    daily_count: Optional[int] = None
    will_cause_overage: bool = False
    estimated_overage_cost: Decimal = Decimal("0")


class SchemaStatus(BaseModel):
    """Which optional storage structures are available."""

    daily_tracking_available: bool = True
    overage_logging_available: bool = True
    usage_history_available: bool = True
    verified: bool = Field(
        default=True,
        description="False when storage was unreachable during the last check",
    )
    checked_at: Optional[datetime] = None


class UsageHistoryEntry(BaseModel):
    """Snapshot of a user's monthly count taken just before a monthly reset."""

    user_id: str
    billing_period: str
    usage_count: int = Field(..., ge=0)
    archived_at: datetime


class ResetReport(BaseModel):
    """Result of a billing-period boundary reset."""

    billing_period: str
    users_reset: int = 0
    skipped: bool = False
    completed_at: datetime


class UsageSummary(BaseModel):
    """Dashboard view of a user's usage against their plan."""

    user_id: str
    tier: str
    billing_period: str
    monthly_used: int
    monthly_limit: int
    monthly_remaining: int
    monthly_percentage: float
    daily_used: int
    daily_limit: int
    daily_remaining: int
    daily_percentage: float
    overage: OverageEstimate
    pending_overage_total: Decimal = Decimal("0")
    overage_rate_per_unit: Decimal
    daily_tracking_available: bool = True
