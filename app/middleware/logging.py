"""
Request logging middleware.

Provides:
- Request ID generation and propagation
- Request/response logging with response time
- Health check endpoint exclusion
"""

import logging
import time
import uuid
from typing import Optional, Set

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from metering.utils.logging import reset_request_id, set_request_id

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for structured request logging.

    Sets the request id in the logging context so every engine log line
    emitted while serving the request carries it, and adds X-Request-ID and
    X-Response-Time headers to responses.
    """

    DEFAULT_EXCLUDE_PATHS: Set[str] = frozenset({
        "/health",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    })

    def __init__(self, app, exclude_paths: Optional[Set[str]] = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or self.DEFAULT_EXCLUDE_PATHS

    def _get_request_id(self, request: Request) -> str:
        """Reuse an upstream request ID or generate a new one."""
        return (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Request-Id")
            or str(uuid.uuid4())
        )

    async def dispatch(self, request: Request, call_next):
        request_id = self._get_request_id(request)
        token = set_request_id(request_id)
        request.state.request_id = request_id

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"{request.method} {request.url.path} failed after {elapsed_ms:.1f}ms"
            )
            reset_request_id(token)
            raise

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"

        if request.url.path not in self.exclude_paths:
            level = logging.WARNING if response.status_code >= 500 else logging.INFO
            logger.log(
                level,
                f"{request.method} {request.url.path} {response.status_code} "
                f"({elapsed_ms:.1f}ms)",
            )

        reset_request_id(token)
        return response
