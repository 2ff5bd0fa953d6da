"""
API server for the usage metering engine.

Exposes quota checks, usage recording, overage billing and the cron-driven
billing-period reset over HTTP.
"""

from contextlib import asynccontextmanager

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from metering import __version__
from metering.config import get_settings
from metering.utils.logging import setup_logging

logger = setup_logging()

from app.error_handlers import register_exception_handlers  # noqa: E402
from app.middleware import RequestLoggingMiddleware  # noqa: E402
from app.routes import health_router, usage_router  # noqa: E402
from metering.usage.service import get_metering_service  # noqa: E402

settings = get_settings()
logger.info(f"Configuration loaded: {settings.get_config_summary()}")

# =============================================================================
# Sentry
# =============================================================================

if settings.logging.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.logging.sentry_dsn,
        environment=settings.logging.environment,
        integrations=[StarletteIntegration(), FastApiIntegration()],
        traces_sample_rate=0.1 if settings.logging.is_production else 1.0,
        send_default_pii=False,
        release=f"usage-metering@{__version__}",
    )
    logger.info(f"Sentry initialized for environment: {settings.logging.environment}")


# =============================================================================
# Initialize FastAPI App
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Verify the storage schema at startup and release pools at shutdown."""
    service = get_metering_service()
    await service.startup()
    yield
    try:
        await service.shutdown()
    except Exception as e:
        logger.warning("Failed to shut down metering service: %s", e)


app = FastAPI(
    title="Usage Metering API",
    description="Tiered usage quotas with monthly and daily limits and consented overage billing.",
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health checks and schema status"},
        {"name": "usage", "description": "Quota checks, usage recording and overage billing"},
    ],
)

register_exception_handlers(app)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(health_router)
app.include_router(usage_router)


if __name__ == "__main__":
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=not settings.logging.is_production)
