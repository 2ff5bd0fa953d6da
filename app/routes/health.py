"""
Health check and root endpoints.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import sentry_sdk
from fastapi import APIRouter, Depends

from metering import __version__
from metering.config import get_settings
from metering.usage.service import MeteringService, get_metering_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def get_sentry_status() -> Dict[str, Any]:
    """Check whether Sentry error reporting is active."""
    try:
        client = sentry_sdk.get_client()
        return {"configured": bool(get_settings().logging.sentry_dsn), "active": client.is_active()}
    except Exception as e:
        logger.warning(f"Sentry status check failed: {e}")
        return {"configured": False, "active": False}


@router.get("/")
async def root() -> Dict[str, str]:
    return {"message": "Usage metering API", "version": __version__}


@router.get("/health")
async def health(
    service: MeteringService = Depends(get_metering_service),
) -> Dict[str, Any]:
    """
    Report service health and the reduced-feature flags.

    The service stays "healthy" while degraded: missing optional tables only
    switch features off.
    """
    settings = get_settings()
    schema = service.guard.status
    degraded = not (
        schema.daily_tracking_available
        and schema.overage_logging_available
        and schema.usage_history_available
    )
    return {
        "status": "healthy",
        "degraded": degraded,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": "postgres" if settings.is_database_configured else "memory",
        "cache": "redis" if settings.is_redis_configured else "local",
        "schema": schema.model_dump(mode="json"),
        "sentry": get_sentry_status(),
    }
