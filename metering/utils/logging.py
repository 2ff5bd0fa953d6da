"""
Structured logging for the usage metering service.

Every record carries the request id set by the HTTP middleware and the user
id of the metering operation in progress, so a degraded quota decision or a
deferred increment can be traced back to one request and one account.
Connection strings and credentials are redacted before formatting.
"""

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from metering.config import get_settings

SERVICE_NAME = "usage-metering"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# Database and cache URLs embed credentials; cron calls carry a bearer secret
SENSITIVE_PATTERNS: list[re.Pattern] = [
    re.compile(r'postgres(?:ql)?://[^\s"\']+', re.IGNORECASE),
    re.compile(r'rediss?://[^\s"\']+', re.IGNORECASE),
    re.compile(r'password["\']?\s*[:=]\s*["\']?[^\s,}]+', re.IGNORECASE),
    re.compile(r'secret["\']?\s*[:=]\s*["\']?[\w-]+', re.IGNORECASE),
    re.compile(r'bearer\s+[\w.-]+', re.IGNORECASE),
]

REDACTED = "[REDACTED]"

DEVELOPMENT_FORMAT = "%(asctime)s %(levelname)-8s [%(request_id)s] [%(user_id)s] %(name)s - %(message)s"

# LogRecord attributes that are not caller-supplied extras
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "request_id", "user_id", "taskName"}


def redact_sensitive_data(message: str) -> str:
    """Replace credentials and connection strings with [REDACTED]."""
    if not message:
        return message
    for pattern in SENSITIVE_PATTERNS:
        message = pattern.sub(REDACTED, message)
    return message


class RequestContextFilter(logging.Filter):
    """Stamp request and user ids from the current context onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        record.user_id = user_id_var.get() or "-"
        return True


class SensitiveDataFilter(logging.Filter):

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_sensitive_data(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_sensitive_data(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line for log aggregation in production.

    Errors include their source location; values passed through ``extra=``
    are nested under "extra".
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "request_id": getattr(record, "request_id", "-"),
            "user_id": getattr(record, "user_id", "-"),
        }
        if record.levelno >= logging.ERROR:
            entry["source"] = f"{record.pathname}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, default=str, ensure_ascii=False)


def setup_logging(
    service_name: str = SERVICE_NAME,
    log_level: Optional[int] = None,
    force_json: bool = False,
) -> logging.Logger:
    """
    Install a single stdout handler on the root logger.

    JSON output in production or when LOG_FORMAT_JSON is set, a plain
    one-line format otherwise.
    """
    settings = get_settings().logging
    level = log_level if log_level is not None else getattr(logging, settings.log_level, logging.INFO)
    use_json = force_json or settings.log_format_json or settings.is_production

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JSONFormatter(service_name) if use_json else logging.Formatter(DEVELOPMENT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # asyncpg logs every pool reconnect at INFO
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    root_logger.info(
        "Logging configured",
        extra={"log_level": logging.getLevelName(level), "json": use_json},
    )
    return root_logger


def set_request_id(request_id: str) -> Token:
    """Bind a request id to the current context; pass the token to reset_request_id."""
    return request_id_var.set(request_id)


def reset_request_id(token: Token) -> None:
    request_id_var.reset(token)


@contextmanager
def usage_context(user_id: str) -> Iterator[None]:
    """Attach ``user_id`` to every log record emitted inside the block."""
    token = user_id_var.set(user_id)
    try:
        yield
    finally:
        user_id_var.reset(token)
