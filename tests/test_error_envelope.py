"""Tests for the response envelope and error handling.

Every error response has the same shape:
{
    "success": false,
    "message": "<human readable>",
    "error": {"code": "<stable_code>", "details": <object|array, optional>}
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from erpcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from erpcore.api.schemas import Envelope, ErrorBody
from erpcore.app import create_app
from erpcore.config import Environment
from erpcore.service.errors import ConflictError, RateLimitError


class TestErrorBody:
    def test_details_optional(self):
        error = ErrorBody(code="unauthorized")
        assert error.details is None

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot")

    @pytest.mark.parametrize("code", sorted(set(_STATUS_TO_CODE.values())))
    def test_every_mapped_code_is_valid(self, code):
        assert ErrorBody(code=code).code == code


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (408, "request_timeout"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (418, "validation_error"),
            (502, "server_error"),
        ],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code


class TestErrorResponse:
    def test_shape(self):
        response = _error_response(409, "User with this email already exists")

        assert response.status_code == 409
        assert json.loads(response.body) == {
            "success": False,
            "message": "User with this email already exists",
            "error": {"code": "conflict"},
        }

    def test_details_and_headers(self):
        response = _error_response(
            429, "Too many attempts", {"retry_after": 30}, headers={"Retry-After": "30"}
        )

        body = json.loads(response.body)
        assert body["error"] == {"code": "rate_limited", "details": {"retry_after": 30}}
        assert response.headers["Retry-After"] == "30"

    def test_success_envelope_omits_error(self):
        dumped = Envelope(success=True, data={"id": "1"}).model_dump(exclude_none=True)
        assert dumped == {"success": True, "data": {"id": "1"}}


@pytest.fixture
def failing_client(runtime):
    app = create_app(runtime)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("connection to postgresql://admin:hunter2@db/erp failed")

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("Duplicate", detail={"field": "email"})

    @app.get("/limited")
    async def limited():
        raise RateLimitError("Slow down", retry_after=12)

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error(self, failing_client):
        response = failing_client.get("/conflict")

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "message": "Duplicate",
            "error": {"code": "conflict", "details": {"field": "email"}},
        }

    def test_rate_limit_sets_retry_after(self, failing_client):
        response = failing_client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "12"

    def test_unhandled_exception_is_sanitized(self, failing_client):
        response = failing_client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "Internal server error"
        assert body["error"]["code"] == "server_error"
        assert "hunter2" not in response.text

    def test_production_hides_details(self, failing_client, runtime):
        runtime.settings.app_env = Environment.PRODUCTION

        response = failing_client.get("/boom")

        assert response.status_code == 500
        assert "details" not in response.json()["error"]

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/nope")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "message": "Not Found",
            "error": {"code": "not_found"},
        }

    def test_malformed_json_body(self, client):
        response = client.post(
            "/v1/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
