"""Shared data models for the metering engine."""

from .usage import (
    UNLIMITED,
    OverageCharge,
    OverageEstimate,
    OverageStatus,
    PlanDefinition,
    PlanTier,
    QuotaDecision,
    QuotaReason,
    ResetReport,
    SchemaStatus,
    UsageHistoryEntry,
    UsageRecord,
    UsageSummary,
)

__all__ = [
    "UNLIMITED",
    "OverageCharge",
    "OverageEstimate",
    "OverageStatus",
    "PlanDefinition",
    "PlanTier",
    "QuotaDecision",
    "QuotaReason",
    "ResetReport",
    "SchemaStatus",
    "UsageHistoryEntry",
    "UsageRecord",
    "UsageSummary",
]
