"""
Pydantic models for the usage metering endpoints.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from metering.types.usage import OverageCharge, UsageHistoryEntry

USER_ID_PATTERN = r"^[\w.@:-]+$"


class PlanResponse(BaseModel):
    """Response model for one subscription tier."""

    id: str
    name: str
    monthly_limit: int
    daily_limit: int
    overage_rate_per_unit: Decimal
    seats_included: int
    additional_seat_price: Decimal


class AllPlansResponse(BaseModel):
    """Response model for all configured tiers."""

    plans: List[PlanResponse]


class CheckQuotaRequest(BaseModel):
    """Request model for a quota check before a metered action."""

    user_id: str = Field(..., min_length=1, max_length=128, pattern=USER_ID_PATTERN)
    tier: str = Field(..., min_length=1, max_length=32)
    overage_consent: bool = False


class RecordUsageRequest(BaseModel):
    """Request model for recording a completed metered action."""

    user_id: str = Field(..., min_length=1, max_length=128, pattern=USER_ID_PATTERN)
    quantity: int = Field(default=1, ge=1, le=10_000)
    tier: Optional[str] = Field(default=None, max_length=32)


class RecordOverageRequest(BaseModel):
    """Request model for billing consented overage."""

    user_id: str = Field(..., min_length=1, max_length=128, pattern=USER_ID_PATTERN)
    tier: str = Field(..., min_length=1, max_length=32)
    unit_count: int = Field(..., ge=1, le=10_000)


class OverageRecordedResponse(BaseModel):
    """Response model for an overage charge request."""

    success: bool = True
    recorded: bool
    charge: Optional[OverageCharge] = None


class OverageChargesResponse(BaseModel):
    """Response model for a user's overage charges."""

    charges: List[OverageCharge]
    total_pending: Decimal


class UsageHistoryResponse(BaseModel):
    """Response model for archived monthly usage."""

    history: List[UsageHistoryEntry]
