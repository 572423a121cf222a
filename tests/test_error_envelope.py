"""Tests for the response envelope and error mapping.

Every response uses the envelope:
{
    "success": <bool>,
    "message": "<human_readable>",
    "data": <object|array>,
    "errors": [<object>],
    "error_code": "<stable_code>"
}
with absent members omitted.
"""

import pytest
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from eventauth import app as app_module
from eventauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from eventauth.api.schemas import Envelope, ok
from eventauth.service.errors import (
    AccountLockedError,
    ExpiredTokenError,
    InvalidTokenError,
    PolicyViolationError,
    ServiceError,
    SigningError,
)
from eventauth.storage.errors import ConstraintViolation

_faulty = APIRouter(prefix="/_faulty")


@_faulty.get("/constraint")
async def _raise_constraint():
    raise ConstraintViolation("email already exists", {"field": "email"})


@_faulty.get("/signing")
async def _raise_signing():
    raise SigningError("Unable to issue access token")


@_faulty.get("/boom")
async def _raise_uncaught():
    raise RuntimeError("secret=hunter2 leaked in message")


_faulty_app = FastAPI()
register_exception_handlers(_faulty_app)
_faulty_app.include_router(_faulty)


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def faulty_client():
    return TestClient(_faulty_app, raise_server_exceptions=False)


class TestEnvelope:
    def test_ok_omits_absent_members(self):
        assert ok({"a": 1}) == {"success": True, "data": {"a": 1}}
        assert ok(message="done") == {"success": True, "message": "done"}

    def test_error_envelope_shape(self):
        envelope = Envelope(
            success=False, message="Nope", errors=[{"field": "x"}], error_code="forbidden"
        )
        assert envelope.to_content() == {
            "success": False,
            "message": "Nope",
            "errors": [{"field": "x"}],
            "error_code": "forbidden",
        }


class TestStatusCodes:
    def test_known_status_codes(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(423) == "account_locked"
        assert _error_code_for_status(503) == "service_unavailable"

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"
        assert 418 not in _STATUS_TO_CODE


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidTokenError("bad"), 401, "invalid_token"),
            (ExpiredTokenError("old"), 401, "token_expired"),
            (AccountLockedError("locked"), 423, "account_locked"),
            (PolicyViolationError("weak"), 400, "policy_violation"),
            (SigningError("no key"), 500, "token_issuance_failed"),
        ],
    )
    def test_error_classes_carry_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code

    def test_overrides(self):
        exc = ServiceError("teapot", status_code=418, error_code="teapot")
        assert exc.status_code == 418
        assert exc.error_code == "teapot"
        assert exc.detail == {}
        assert exc.errors == []


class TestHandlers:
    def test_constraint_violation_is_409(self, faulty_client):
        response = faulty_client.get("/_faulty/constraint")

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "message": "email already exists",
            "error_code": "conflict",
        }

    def test_signing_error_is_500_without_detail(self, faulty_client):
        response = faulty_client.get("/_faulty/signing")

        assert response.status_code == 500
        assert response.json()["error_code"] == "token_issuance_failed"

    def test_uncaught_exception_is_generic(self, faulty_client):
        response = faulty_client.get("/_faulty/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "Internal server error"
        assert "hunter2" not in response.text

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/auth/does-not-exist")

        assert response.status_code == 404
        assert response.json()["success"] is False
        assert response.json()["error_code"] == "not_found"

    def test_request_id_is_echoed(self, client):
        response = client.get("/auth/password/policy", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated_when_absent(self, client):
        response = client.get("/auth/password/policy")
        assert response.headers["X-Request-ID"]

    def test_security_headers(self, client):
        response = client.get("/auth/password/policy")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestHealth:
    def test_healthz_reports_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["revocation_store"]["type"] == "MemoryCache"
        assert body["checks"]["token_sweeper"]["status"] == "stopped"
