"""Middleware components for the usage metering API."""

from .logging import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
