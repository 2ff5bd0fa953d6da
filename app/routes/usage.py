"""
Usage metering, quota and overage endpoints.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from metering.types.usage import (
    OverageStatus,
    QuotaDecision,
    ResetReport,
    UsageRecord,
    UsageSummary,
)
from metering.usage import get_all_plans
from metering.usage.service import MeteringService, get_metering_service

from ..auth import verify_cron_secret
from ..models.usage import (
    AllPlansResponse,
    CheckQuotaRequest,
    OverageChargesResponse,
    OverageRecordedResponse,
    PlanResponse,
    RecordOverageRequest,
    RecordUsageRequest,
    UsageHistoryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("/plans")
async def list_plans() -> AllPlansResponse:
    """Get all subscription tiers with their limits and overage rates."""
    return AllPlansResponse(
        plans=[PlanResponse(**plan.model_dump()) for plan in get_all_plans()]
    )


@router.post("/check")
async def check_quota(
    request: CheckQuotaRequest,
    service: MeteringService = Depends(get_metering_service),
) -> QuotaDecision:
    """
    Decide whether the user may perform one more metered action.

    A blocked action is a normal decision (allowed=false with a reason), not
    an error response.
    """
    decision = await service.check_quota(
        request.user_id,
        request.tier,
        overage_consent=request.overage_consent,
    )
    if not decision.allowed:
        logger.info(
            f"Quota check blocked user {request.user_id}: "
            f"{decision.reason.value if decision.reason else 'unknown'}"
        )
    return decision


@router.post("/record")
async def record_usage(
    request: RecordUsageRequest,
    service: MeteringService = Depends(get_metering_service),
) -> UsageRecord:
    """Record usage after a metered action completed."""
    return await service.record_usage(
        request.user_id,
        request.quantity,
        tier_id=request.tier,
    )


@router.post("/overage", status_code=status.HTTP_201_CREATED)
async def record_overage(
    request: RecordOverageRequest,
    service: MeteringService = Depends(get_metering_service),
) -> OverageRecordedResponse:
    """Bill consented overage units as a pending charge."""
    charge = await service.record_overage(request.user_id, request.tier, request.unit_count)
    return OverageRecordedResponse(recorded=charge is not None, charge=charge)


@router.get("/{user_id}/summary")
async def get_usage_summary(
    user_id: str,
    tier: str = Query(..., min_length=1, max_length=32),
    service: MeteringService = Depends(get_metering_service),
) -> UsageSummary:
    """Usage against the plan, with percentages and pending overage."""
    return await service.get_usage_summary(user_id, tier)


@router.get("/{user_id}/overage")
async def list_overage_charges(
    user_id: str,
    charge_status: Optional[OverageStatus] = Query(default=None, alias="status"),
    service: MeteringService = Depends(get_metering_service),
) -> OverageChargesResponse:
    """A user's overage charges, newest first, with the pending total."""
    charges = await service.list_overage_charges(user_id, charge_status)
    return OverageChargesResponse(
        charges=charges,
        total_pending=await service.biller.pending_total(user_id),
    )


@router.get("/{user_id}/history")
async def get_usage_history(
    user_id: str,
    service: MeteringService = Depends(get_metering_service),
) -> UsageHistoryResponse:
    """Monthly counts archived at previous billing-period resets."""
    return UsageHistoryResponse(history=await service.get_usage_history(user_id))


@router.post("/reset", dependencies=[Depends(verify_cron_secret)])
async def reset_billing_period(
    service: MeteringService = Depends(get_metering_service),
) -> ResetReport:
    """Reset monthly counters at a billing-period boundary (cron only)."""
    report = await service.on_billing_period_boundary()
    logger.info(
        f"Billing period reset via API: {report.billing_period} "
        f"(users_reset={report.users_reset}, skipped={report.skipped})"
    )
    return report
