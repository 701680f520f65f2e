"""Error envelope format and exception-to-status mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from warden.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from warden.api.schemas import Envelope, ErrorBody
from warden.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
)
from warden.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only the stable codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok", data={})
        second = Envelope(status="ok", data={})
        assert first.request_id and first.request_id != second.request_id

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code, code",
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
    def test_status_maps_to_stable_code(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    def test_error_response_body(self):
        response = _error_response(404, "role not found", {"role_id": "r1"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "role not found",
            "details": {"role_id": "r1"},
        }
        assert body["request_id"]


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "exc, status_code, code",
        [
            (BadRequestError("bad"), 400, "validation_error"),
            (AuthenticationError("nope"), 401, "unauthorized"),
            (ForbiddenError("insufficient permissions"), 403, "forbidden"),
            (NotFoundError("missing"), 404, "not_found"),
            (RateLimitedError("slow down"), 429, "rate_limited"),
            (ConstraintViolation("email already exists", {"field": "email"}), 409, "conflict"),
        ],
    )
    def test_service_and_storage_errors(self, exc, status_code, code):
        resp = _app_raising(exc).get("/boom")
        assert resp.status_code == status_code
        assert resp.json()["error"]["code"] == code

    def test_store_unavailable_is_retryable(self):
        resp = _app_raising(StoreUnavailable("get_user", TimeoutError("slow"))).get("/boom")
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "5"
        body = resp.json()
        assert body["error"]["code"] == "service_unavailable"
        assert "slow" not in body["error"]["message"]

    def test_unexpected_error_is_opaque(self):
        resp = _app_raising(KeyError("secret-internal-detail")).get("/boom")
        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
