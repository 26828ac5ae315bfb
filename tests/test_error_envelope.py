"""Tests for the error envelope format and error handling.

Error responses look like:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from shopadmin.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from shopadmin.api.schemas import Envelope, ErrorBody
from shopadmin.logging import correlation_id_var, sanitize_error_message, set_correlation_id
from shopadmin.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidSessionError,
    InvalidSignatureError,
    RateLimitedError,
    StoreUnavailableError,
    TokenExpiredError,
)
from shopadmin.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_service_unavailable_is_a_valid_code(self):
        assert ErrorBody(code="service_unavailable", message="down").code == "service_unavailable"

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")


class TestEnvelope:
    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_uses_correlation_id(self):
        token = correlation_id_var.set(None)
        try:
            set_correlation_id("req-123")
            assert Envelope(status="ok").request_id == "req-123"
        finally:
            correlation_id_var.reset(token)

    def test_request_id_generated_without_context(self):
        token = correlation_id_var.set(None)
        try:
            first = Envelope(status="ok").request_id
            second = Envelope(status="ok").request_id
        finally:
            correlation_id_var.reset(token)
        assert first and second and first != second


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_mapping(self, status_code, code):
        assert _STATUS_TO_CODE[status_code] == code
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(429, "too many attempts", {"retry_after": 3}, headers={"Retry-After": "3"})
        body = json.loads(response.body)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3"
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "rate_limited",
            "message": "too many attempts",
            "details": {"retry_after": 3},
        }


class TestServiceErrors:
    @pytest.mark.parametrize("exc_type", [InvalidSignatureError, TokenExpiredError, InvalidSessionError])
    def test_token_failures_are_unauthorized(self, exc_type):
        exc = exc_type("boom")
        assert isinstance(exc, AuthenticationError)
        assert exc.status_code == 401
        assert exc.error_code == "unauthorized"

    def test_rate_limited(self):
        exc = RateLimitedError(retry_after_seconds=12)
        assert exc.status_code == 429
        assert exc.message == "too many attempts"
        assert exc.retry_after_seconds == 12

    def test_store_unavailable(self):
        exc = StoreUnavailableError("redis timeout")
        assert exc.status_code == 503
        assert exc.error_code == "service_unavailable"


class TestMessageSanitizing:
    def test_credentials_and_paths_redacted(self):
        message = sanitize_error_message("bad config password=hunter2 at /etc/shopadmin/app.env")
        assert "hunter2" not in message
        assert "/etc/shopadmin" not in message
        assert message.count("[redacted]") == 2

    def test_plain_messages_untouched(self):
        assert sanitize_error_message("email already exists") == "email already exists"
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_truncated(self):
        assert len(sanitize_error_message("x" * 1000)) == 500

    def test_handlers_sanitize_client_messages(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/conflict")
        async def conflict():
            raise ConflictError("duplicate row: SELECT id FROM app_user WHERE email = 'a@b.c'")

        @app.get("/constraint")
        async def constraint():
            raise ConstraintViolation("token=abc123 already stored")

        with TestClient(app) as client:
            conflict_body = client.get("/conflict").json()
            constraint_body = client.get("/constraint").json()

        assert "app_user" not in conflict_body["error"]["message"]
        assert "[redacted]" in conflict_body["error"]["message"]
        assert "abc123" not in constraint_body["error"]["message"]
