"""
Tests for error handlers.

Tests detail sanitization, validation error formatting, and the mapping of
metering exceptions to HTTP responses.
"""

import unittest
from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.error_handlers import (
    format_validation_errors,
    register_exception_handlers,
    sanitize_details,
)
from metering.exceptions import (
    AccountingDeferred,
    ConfigurationError,
    StorageUnavailable,
    UserNotFound,
)


class TestErrorDetailsSanitization(unittest.TestCase):
    """Tests for error details sanitization."""

    def test_safe_keys_are_preserved(self):
        details = {"user_id": "user-1", "quantity": 3, "attempts": 3}
        self.assertEqual(sanitize_details(details), details)

    def test_unsafe_keys_are_removed(self):
        details = {
            "user_id": "user-1",
            "dsn": "postgresql://user:pass@db/metering",
            "internal_error": "stack trace...",
        }
        sanitized = sanitize_details(details)
        self.assertEqual(sanitized, {"user_id": "user-1"})

    def test_empty_and_none_details_return_empty(self):
        self.assertEqual(sanitize_details({}), {})
        self.assertEqual(sanitize_details(None), {})


class TestValidationErrorFormatting(unittest.TestCase):

    def test_body_prefix_is_dropped_from_field(self):
        errors = [{"loc": ("body", "quantity"), "type": "int_type", "msg": "bad"}]
        self.assertEqual(
            format_validation_errors(errors),
            [{"field": "quantity", "message": "Field 'quantity' must be an integer"}],
        )

    def test_missing_field_message(self):
        errors = [{"loc": ("body", "user_id"), "type": "missing", "msg": "Field required"}]
        self.assertEqual(
            format_validation_errors(errors)[0]["message"],
            "Field 'user_id' is required",
        )

    def test_output_is_capped_at_ten(self):
        errors = [{"loc": ("body", f"f{i}"), "type": "value_error", "msg": "x"} for i in range(15)]
        self.assertEqual(len(format_validation_errors(errors)), 10)


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unavailable")
    async def unavailable():
        raise StorageUnavailable(internal_message="connection refused")

    @app.get("/deferred")
    async def deferred():
        raise AccountingDeferred("user-1", 2, 3)

    @app.get("/missing-user")
    async def missing_user():
        raise UserNotFound("ghost")

    @app.get("/bad-tier")
    async def bad_tier():
        raise ConfigurationError("Unknown tier: platinum")

    @app.get("/bad-argument")
    async def bad_argument():
        raise ValueError("quantity must be positive")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return app


class TestMeteringExceptionHandlers(unittest.TestCase):
    """Integration tests for the registered handlers."""

    def setUp(self):
        self.client = TestClient(_build_app(), raise_server_exceptions=False)

    def test_storage_unavailable_returns_503_with_retry_after(self):
        with patch("app.error_handlers.report_to_sentry") as mock_report:
            response = self.client.get("/unavailable")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.headers["retry-after"], "5")
        data = response.json()
        self.assertFalse(data["success"])
        self.assertEqual(data["error_code"], "STORAGE_UNAVAILABLE")
        self.assertNotIn("connection refused", response.text)
        mock_report.assert_called_once()

    def test_accounting_deferred_returns_202_with_details(self):
        response = self.client.get("/deferred")

        self.assertEqual(response.status_code, 202)
        data = response.json()
        self.assertEqual(data["error_code"], "ACCOUNTING_DEFERRED")
        self.assertEqual(data["details"], {"user_id": "user-1", "quantity": 2, "attempts": 3})

    def test_user_not_found_returns_404(self):
        response = self.client.get("/missing-user")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["details"], {"user_id": "ghost"})

    def test_configuration_error_is_reported(self):
        with patch("app.error_handlers.report_to_sentry") as mock_report:
            response = self.client.get("/bad-tier")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error_code"], "CONFIGURATION_ERROR")
        mock_report.assert_called_once()

    def test_value_error_returns_400(self):
        response = self.client.get("/bad-argument")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "quantity must be positive")

    def test_unhandled_exception_returns_reference(self):
        with patch("app.error_handlers.report_to_sentry", return_value=None):
            response = self.client.get("/boom")

        self.assertEqual(response.status_code, 500)
        data = response.json()
        self.assertEqual(data["error_code"], "INTERNAL_ERROR")
        self.assertEqual(len(data["details"]["error_reference"]), 8)

    def test_not_found_route_uses_standard_format(self):
        response = self.client.get("/nonexistent-endpoint")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error_code"], "RESOURCE_NOT_FOUND")


class TestErrorResponseFormat(unittest.TestCase):
    """Tests for consistent error response format on the real app."""

    def setUp(self):
        from server import app
        self.client = TestClient(app)

    def test_validation_error_returns_422_with_field_list(self):
        response = self.client.post("/usage/record", json={"user_id": "user-1", "quantity": 0})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.headers["content-type"], "application/json")
        data = response.json()
        self.assertEqual(data["error_code"], "VALIDATION_ERROR")
        self.assertEqual(data["details"]["errors"][0]["field"], "quantity")

    def test_method_not_allowed_returns_405(self):
        response = self.client.delete("/health")
        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.json()["error_code"], "METHOD_NOT_ALLOWED")


if __name__ == "__main__":
    unittest.main()
