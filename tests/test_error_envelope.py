"""Tests for the error envelope format and exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from oceanblog.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from oceanblog.api.schemas import Envelope, ErrorBody
from oceanblog.service.errors import (
    AccountLockedError,
    RateLimitedError,
    UnauthorizedError,
)
from oceanblog.storage.errors import ConstraintViolation, StaleRecordError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Validation failed",
            details=[{"field": "email", "message": "Please provide a valid email"}],
        )
        assert error.details[0]["field"] == "email"

    def test_error_body_missing_code_raises(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(message="Error occurred")

    @pytest.mark.parametrize("code", ["account_locked", "duplicate_account", "invalid_refresh_token"])
    def test_domain_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_envelope_success_status(self):
        envelope = Envelope(status="success", data={"user_id": "123"}, message="done")

        assert envelope.status == "success"
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="success")

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="pending")

        with pytest.raises(PydanticValidationError):
            Envelope(status="ok")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests"),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unmapped_statuses_fall_back_by_class(self):
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_a_valid_error_code(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body)
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_custom_code_and_headers(self):
        response = _error_response(
            400, "Email is already verified", code="already_verified", headers={"X-Test": "1"}
        )

        assert json.loads(response.body)["error"]["code"] == "already_verified"
        assert response.headers["X-Test"] == "1"


class _Body(BaseModel):
    email: str


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unauthorized")
    async def unauthorized():
        raise UnauthorizedError("Invalid token", detail={"reason": "token_invalid"})

    @app.get("/locked")
    async def locked():
        raise AccountLockedError("Account is temporarily locked", detail={"retry_after_minutes": 30})

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("Too many requests, please try again later", retry_after=12, limit=5)

    @app.get("/stale")
    async def stale():
        raise StaleRecordError("user-1", 1, 2)

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.post("/validated")
    async def validated(body: _Body):
        return {"email": body.email}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password=hunter2 at /var/lib/db")

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_internal_reason_is_not_exposed(self, client):
        response = client.get("/unauthorized")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Invalid token",
            "details": None,
        }

    def test_locked_account_keeps_public_details(self, client):
        response = client.get("/locked")

        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"
        assert response.json()["error"]["details"] == {"retry_after_minutes": 30}

    def test_rate_limited_headers(self, client):
        response = client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "12"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_storage_conflicts_are_409(self, client):
        assert client.get("/stale").status_code == 409
        duplicate = client.get("/duplicate")
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["details"] == {"field": "email"}

    def test_request_validation_lists_fields(self, client):
        response = client.post("/validated", json={})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["field"] == "email"

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_unhandled_exception_is_generic(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Internal server error"
        assert "hunter2" not in response.text
