"""Utility modules for the metering service."""

from .logging import (
    reset_request_id,
    set_request_id,
    setup_logging,
    usage_context,
)

__all__ = [
    "reset_request_id",
    "set_request_id",
    "setup_logging",
    "usage_context",
]
