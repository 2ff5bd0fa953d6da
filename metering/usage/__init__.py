"""
Usage metering, quota enforcement and overage billing.

This package tracks per-user consumption of metered actions, enforces tiered
monthly and daily limits, and prices consented overage.
"""

from .billing import OverageBiller, price_units
from .cache import LocalUsageCache, RedisUsageCache, UsageCache
from .enforcer import QuotaEnforcer
from .periods import billing_period_for, period_bounds
from .plans import (
    PLAN_DEFINITIONS,
    additional_seat_cost,
    additional_seats,
    get_all_plans,
    get_plan,
)
from .postgres_store import PostgresUsageStore
from .scheduler import ResetScheduler
from .schema_guard import Feature, Probe, ProbeChain, SchemaGuard
from .service import MeteringService, get_metering_service, reset_metering_service
from .store import InMemoryUsageStore, UsageStore

__all__ = [
    "PLAN_DEFINITIONS",
    "Feature",
    "InMemoryUsageStore",
    "LocalUsageCache",
    "MeteringService",
    "OverageBiller",
    "PostgresUsageStore",
    "Probe",
    "ProbeChain",
    "QuotaEnforcer",
    "RedisUsageCache",
    "ResetScheduler",
    "SchemaGuard",
    "UsageCache",
    "UsageStore",
    "additional_seat_cost",
    "additional_seats",
    "billing_period_for",
    "get_all_plans",
    "get_metering_service",
    "get_plan",
    "period_bounds",
    "price_units",
    "reset_metering_service",
]
