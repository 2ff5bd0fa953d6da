"""Pydantic request/response models for the usage metering API."""

from .usage import (
    AllPlansResponse,
    CheckQuotaRequest,
    OverageChargesResponse,
    OverageRecordedResponse,
    PlanResponse,
    RecordOverageRequest,
    RecordUsageRequest,
    UsageHistoryResponse,
)

__all__ = [
    "AllPlansResponse",
    "CheckQuotaRequest",
    "OverageChargesResponse",
    "OverageRecordedResponse",
    "PlanResponse",
    "RecordOverageRequest",
    "RecordUsageRequest",
    "UsageHistoryResponse",
]
