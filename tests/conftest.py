"""
Pytest configuration and shared fixtures for the metering tests.

The environment is fixed before any project import so settings never pick
up a real database, Redis or Sentry from the developer's shell.
"""

import os
import sys

import pytest

# Environment setup before any imports
for _var in ("DATABASE_URL", "DATABASE_URL_DIRECT", "REDIS_URL", "SENTRY_DSN"):
    os.environ.pop(_var, None)
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["CRON_SECRET"] = "test-cron-secret"

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


@pytest.fixture(autouse=True)
def fresh_settings():
    """Reload settings and drop the service singleton around every test."""
    from metering.config import reload_settings
    from metering.usage.service import reset_metering_service

    reload_settings()
    reset_metering_service()
    yield
    reset_metering_service()
