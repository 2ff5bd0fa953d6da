"""
Exception classes for the usage metering engine.

Every engine exception inherits from MeteringException so the HTTP layer can
map it to a consistent error response.

Exception Hierarchy:
    MeteringException (base)
    ├── ConfigurationError (500)   unknown tier, fatal
    ├── UserNotFound (404)
    ├── StorageUnavailable (503)   absorbed by check_quota (fail-open)
    ├── SchemaMissing (503)        converted to reduced-feature flags
    └── AccountingDeferred (202)   usage could not be recorded after retries

Configuration and user-identity errors are surfaced to callers. Storage and
schema problems are absorbed by the engine and turned into degradation
flags, except AccountingDeferred, which is raised after the metered action
already succeeded so the caller can log it.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes for engine failures."""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNKNOWN_TIER = "UNKNOWN_TIER"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    SCHEMA_MISSING = "SCHEMA_MISSING"
    ACCOUNTING_DEFERRED = "ACCOUNTING_DEFERRED"


class MeteringException(Exception):
    """
    Base exception class for all metering engine errors.

    Attributes:
        message: Human-readable error message (safe for external display).
        error_code: Machine-readable error code from ErrorCode enum.
        status_code: HTTP status code used by the API layer.
        details: Additional context about the error (optional).
        internal_message: Detailed message for logging (not exposed to clients).
    """

    status_code: int = 500
    default_error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message: str = "An unexpected metering error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for API responses."""
        response = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code.value,
        }
        if self.details:
            response["details"] = self.details
        return response

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value!r}, "
            f"status_code={self.status_code})"
        )


class ConfigurationError(MeteringException):
    """
    Raised when a tier identifier does not map to a configured plan.

    This indicates a deployment or data inconsistency and must never be
    swallowed: a live user must always map to a configured tier.
    """

    status_code = 500
    default_error_code = ErrorCode.CONFIGURATION_ERROR
    default_message = "Metering configuration error"

    def __init__(
        self,
        message: Optional[str] = None,
        tier_id: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        details = details or {}
        if tier_id is not None:
            details["tier_id"] = tier_id
        self.tier_id = tier_id

        super().__init__(
            message=message,
            error_code=error_code or self.default_error_code,
            details=details,
            internal_message=internal_message,
        )


class UserNotFound(MeteringException):
    """Raised when a user identifier is invalid or unknown to the store."""

    status_code = 404
    default_error_code = ErrorCode.USER_NOT_FOUND
    default_message = "User not found"

    def __init__(
        self,
        user_id: Optional[str] = None,
        message: Optional[str] = None,
        internal_message: Optional[str] = None,
    ):
        self.user_id = user_id
        super().__init__(
            message=message,
            details={"user_id": user_id} if user_id else None,
            internal_message=internal_message,
        )


class StorageUnavailable(MeteringException):
    """
    Raised by a usage store when its backend cannot be reached.

    check_quota converts this into a fail-open decision; record_usage
    retries it with backoff.
    """

    status_code = 503
    default_error_code = ErrorCode.STORAGE_UNAVAILABLE
    default_message = "Usage storage is temporarily unavailable"


class SchemaMissing(MeteringException):
    """
    Raised when a required table or column does not exist.

    Never surfaced to callers: the Schema Guard turns it into a
    reduced-feature-set flag.
    """

    status_code = 503
    default_error_code = ErrorCode.SCHEMA_MISSING
    default_message = "Required storage structure is missing"

    def __init__(
        self,
        structure: Optional[str] = None,
        message: Optional[str] = None,
        internal_message: Optional[str] = None,
    ):
        self.structure = structure
        super().__init__(
            message=message,
            details={"structure": structure} if structure else None,
            internal_message=internal_message,
        )


class AccountingDeferred(MeteringException):
    """
    Raised when usage could not be recorded after all retry attempts.

    The metered action itself already succeeded and must not be blocked;
    the caller should log this so operations can reconcile the lost usage.
    """

    status_code = 202
    default_error_code = ErrorCode.ACCOUNTING_DEFERRED
    default_message = "Usage accounting was deferred"

    def __init__(
        self,
        user_id: str,
        quantity: int,
        attempts: int,
        message: Optional[str] = None,
        internal_message: Optional[str] = None,
    ):
        self.user_id = user_id
        self.quantity = quantity
        self.attempts = attempts
        super().__init__(
            message=message,
            details={
                "user_id": user_id,
                "quantity": quantity,
                "attempts": attempts,
            },
            internal_message=internal_message,
        )


def is_retryable_error(exc: Exception) -> bool:
    """
    Check if an error is potentially retryable.

    Only storage outages are transient; configuration, identity and schema
    problems will not resolve by retrying the same call.
    """
    return isinstance(exc, StorageUnavailable)
