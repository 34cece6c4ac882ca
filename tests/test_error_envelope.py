"""Tests for the error envelope returned by every failing endpoint.

Shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from hotelbook.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from hotelbook.api.schemas import Envelope, ErrorBody
from hotelbook.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    PolicyViolationError,
    RateLimitedError,
)
from hotelbook.storage.errors import ConstraintViolation

LOCK_UNTIL = datetime(2024, 6, 1, 12, 15, tzinfo=timezone.utc)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Authentication required")

        assert error.code == "unauthorized"
        assert error.details is None

    def test_domain_codes_are_accepted(self):
        for code in ("locked", "otp_mismatch", "password_reuse", "token_expired"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="x")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(409, "Email already registered")

        assert response.status_code == 409
        assert b'"code":"conflict"' in response.body


class _Body(BaseModel):
    email: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(LOCK_UNTIL)

    @app.get("/invalid")
    async def invalid():
        raise InvalidCredentialsError(reason="account_not_found")

    @app.get("/policy")
    async def policy():
        raise PolicyViolationError(["Password must be at least 12 characters long"])

    @app.get("/throttled")
    async def throttled():
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": 42})

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/crash")
    async def crash():
        raise RuntimeError("connection to db-primary:5432 refused")

    @app.post("/shape")
    async def shape(body: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_locked_exposes_lock_until(self, client):
        response = client.get("/locked")
        body = response.json()

        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["error"]["code"] == "locked"
        assert body["error"]["details"] == {"lockUntil": LOCK_UNTIL.isoformat()}
        assert body["request_id"]

    def test_invalid_credentials_hides_reason(self, client):
        body = client.get("/invalid").json()

        assert body["error"] == {
            "code": "invalid_credentials",
            "message": "Invalid credentials",
            "details": None,
        }

    def test_policy_violation_lists_rules(self, client):
        response = client.get("/policy")

        assert response.status_code == 400
        assert response.json()["error"]["details"]["violations"] == [
            "Password must be at least 12 characters long"
        ]

    def test_rate_limited_sets_retry_after(self, client):
        response = client.get("/throttled")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/duplicate")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_unexpected_error_is_generic(self, client):
        response = client.get("/crash")
        body = response.json()

        assert response.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert body["error"]["message"] == "internal server error"
        assert "db-primary" not in response.text

    def test_request_shape_error_is_validation_error(self, client):
        response = client.post("/shape", json={})
        body = response.json()

        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["field"] == "email"
