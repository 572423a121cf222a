"""Integration tests for the /auth HTTP surface.

Covers the complete session flow through the FastAPI app:
- Login with password
- Token refresh and rotation
- Logout and revocation
- Password reset and email verification
- Password tooling and action tokens
"""

import base64
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from eventauth import app as app_module
from eventauth.service.runtime import get_runtime, reset_runtime_for_tests
from eventauth.storage.errors import StoreUnavailableError

PASSWORD = "Corr3ct-Horse!"
NEW_PASSWORD = "Batt3ry-Staple?"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def student():
    runtime = get_runtime()
    account = runtime.store.create_account("student@example.com", full_name="Sam Lee")
    runtime.passwords.set_password(account.id, PASSWORD)
    return account


def _login(client, email="student@example.com", password=PASSWORD):
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_returns_token_pair(self, client, student):
        response = client.post(
            "/auth/login",
            json={"email": "Student@Example.com", "password": PASSWORD},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 900
        assert data["account"]["id"] == student.id
        assert "password_hash" not in data["account"]
        assert response.headers["Cache-Control"] == "no-store"

    def test_login_wrong_password(self, client, student):
        response = client.post(
            "/auth/login",
            json={"email": "student@example.com", "password": "wrong"},
        )

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_email_matches_wrong_password(self, client, student):
        unknown = client.post(
            "/auth/login",
            json={"email": "ghost@example.com", "password": PASSWORD},
        )
        wrong = client.post(
            "/auth/login",
            json={"email": "student@example.com", "password": "wrong"},
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["message"] == wrong.json()["message"]

    def test_login_rejects_invalid_email(self, client):
        response = client.post(
            "/auth/login", json={"email": "not-an-email", "password": PASSWORD}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "validation_error"
        assert body["errors"][0]["field"] == "email"

    def test_lockout_returns_423(self, client, student):
        for _ in range(4):
            client.post(
                "/auth/login",
                json={"email": "student@example.com", "password": "wrong"},
            )
        response = client.post(
            "/auth/login",
            json={"email": "student@example.com", "password": "wrong"},
        )

        assert response.status_code == 423
        assert response.json()["error_code"] == "account_locked"

    def test_store_outage_returns_503(self, client, student):
        get_runtime().cache.put_refresh = AsyncMock(
            side_effect=StoreUnavailableError("put_refresh")
        )

        response = client.post(
            "/auth/login",
            json={"email": "student@example.com", "password": PASSWORD},
        )

        assert response.status_code == 503
        assert response.json()["error_code"] == "service_unavailable"


class TestRefreshAndLogout:
    def test_refresh_rotates_tokens(self, client, student):
        tokens = _login(client)

        response = client.post(
            "/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["access_token"] != tokens["access_token"]
        assert data["refresh_token"] != tokens["refresh_token"]

        replay = client.post(
            "/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error_code"] == "invalid_token"

    def test_logout_revokes_access_and_refresh(self, client, student):
        tokens = _login(client)
        headers = _bearer(tokens["access_token"])

        assert client.get("/auth/me", headers=headers).status_code == 200
        assert client.post("/auth/logout", headers=headers).status_code == 200

        me = client.get("/auth/me", headers=headers)
        assert me.status_code == 401
        refresh = client.post(
            "/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_logout_twice_succeeds(self, client, student):
        tokens = _login(client)
        headers = _bearer(tokens["access_token"])

        assert client.post("/auth/logout", headers=headers).status_code == 200
        assert client.post("/auth/logout", headers=headers).status_code == 200

    def test_logout_requires_bearer(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 401

    def test_expired_access_token(self, client, clock):
        runtime = reset_runtime_for_tests(clock=clock)
        account = runtime.store.create_account("late@example.com")
        runtime.passwords.set_password(account.id, PASSWORD)
        tokens = _login(client, email="late@example.com")

        clock.advance(900)
        response = client.get("/auth/me", headers=_bearer(tokens["access_token"]))

        assert response.status_code == 401
        assert response.json()["error_code"] == "token_expired"


class TestMe:
    def test_me_requires_authentication(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401

    def test_me_rejects_garbage_token(self, client):
        response = client.get("/auth/me", headers=_bearer("garbage"))
        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_token"

    def test_me_returns_account(self, client, student):
        tokens = _login(client)
        response = client.get("/auth/me", headers=_bearer(tokens["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "student@example.com"


class TestPasswordReset:
    def _capture_reset_token(self, client, email):
        notifier = get_runtime().notifier
        notifier.send_password_reset = AsyncMock(return_value=True)
        response = client.post("/auth/forgot-password", json={"email": email})
        assert response.status_code == 200
        return notifier.send_password_reset.await_args.args[1]

    def test_forgot_password_is_uniform(self, client, student):
        known = client.post(
            "/auth/forgot-password", json={"email": "student@example.com"}
        )
        unknown = client.post(
            "/auth/forgot-password", json={"email": "ghost@example.com"}
        )

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_flow(self, client, student):
        raw_token = self._capture_reset_token(client, "student@example.com")

        check = client.get(f"/auth/verify-reset-token/{raw_token}")
        assert check.status_code == 200
        assert check.json()["data"]["email"] == "student@example.com"

        reset = client.post(
            "/auth/reset-password",
            json={"token": raw_token, "new_password": NEW_PASSWORD},
        )
        assert reset.status_code == 200

        assert _login(client, password=NEW_PASSWORD)["access_token"]
        reuse = client.post(
            "/auth/reset-password",
            json={"token": raw_token, "new_password": "An0ther-Pass!"},
        )
        assert reuse.status_code == 401

    def test_reset_rejects_weak_password(self, client, student):
        raw_token = self._capture_reset_token(client, "student@example.com")

        response = client.post(
            "/auth/reset-password", json={"token": raw_token, "new_password": "weak"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "policy_violation"
        assert any(e["code"] == "min_length" for e in body["errors"])

    def test_unknown_reset_token(self, client):
        response = client.get("/auth/verify-reset-token/" + "0" * 64)
        assert response.status_code == 401


class TestChangePasswordAndVerification:
    def test_change_password_ends_session(self, client, student):
        tokens = _login(client)

        response = client.post(
            "/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_bearer(tokens["access_token"]),
        )

        assert response.status_code == 200
        refresh = client.post(
            "/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401
        assert _login(client, password=NEW_PASSWORD)

    def test_email_verification(self, client, student):
        tokens = _login(client)
        notifier = get_runtime().notifier
        notifier.send_email_verification = AsyncMock(return_value=True)

        requested = client.post(
            "/auth/verify-email/request", headers=_bearer(tokens["access_token"])
        )
        assert requested.status_code == 200
        raw_token = notifier.send_email_verification.await_args.args[1]

        verified = client.post("/auth/verify-email", json={"token": raw_token})
        assert verified.status_code == 200
        assert verified.json()["data"]["email_verified"] is True


class TestPasswordTooling:
    def test_strength(self, client):
        response = client.post("/auth/password/strength", json={"password": "password"})
        assert response.status_code == 200
        assert response.json()["data"]["score"] == 0

    def test_validate_with_user_info(self, client):
        response = client.post(
            "/auth/password/validate",
            json={"password": "Samuel-2024!", "user_info": {"full_name": "Samuel Lee"}},
        )
        data = response.json()["data"]
        assert data["valid"] is False
        assert data["errors"][0]["code"] == "personal_info"

    def test_breach_check_reports_unchecked_when_disabled(self, client):
        response = client.post("/auth/password/breach", json={"password": "password"})
        data = response.json()["data"]
        assert data["checked"] is False
        assert data["message"] == "Breach check unavailable"

    def test_policy_is_public(self, client):
        response = client.get("/auth/password/policy")
        assert response.json()["data"]["min_length"] == 8

    def test_generate(self, client):
        response = client.get("/auth/password/generate", params={"length": 20})
        data = response.json()["data"]
        assert len(data["password"]) == 20
        assert data["strength"]["score"] >= 3

    def test_history(self, client, student):
        tokens = _login(client)
        response = client.get(
            "/auth/password/history", headers=_bearer(tokens["access_token"])
        )
        entries = response.json()["data"]
        assert len(entries) == 1
        assert "password_hash" not in entries[0]


class TestTemporaryTokens:
    def test_issue_and_verify(self, client, student):
        tokens = _login(client)
        issued = client.post(
            "/auth/temporary-token",
            json={"action": "confirm-delete", "data": {"event_id": "e1"}},
            headers=_bearer(tokens["access_token"]),
        )
        assert issued.status_code == 200
        token = issued.json()["data"]["token"]

        matched = client.post(
            "/auth/temporary-token/verify",
            json={"token": token, "action": "confirm-delete"},
        )
        assert matched.status_code == 200
        assert matched.json()["data"]["data"] == {"event_id": "e1"}

        mismatch = client.post(
            "/auth/temporary-token/verify",
            json={"token": token, "action": "confirm-publish"},
        )
        assert mismatch.status_code == 401
        assert mismatch.json()["error_code"] == "invalid_token"

    def test_temporary_token_is_not_an_access_token(self, client, student):
        tokens = _login(client)
        issued = client.post(
            "/auth/temporary-token",
            json={"action": "confirm-delete"},
            headers=_bearer(tokens["access_token"]),
        )
        token = issued.json()["data"]["token"]

        assert client.get("/auth/me", headers=_bearer(token)).status_code == 401

    def test_long_lived_temporary_token_rejected(self, client, student):
        tokens = _login(client)
        response = client.post(
            "/auth/temporary-token",
            json={"action": "confirm-delete", "expiry": "999999999y"},
            headers=_bearer(tokens["access_token"]),
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "validation_error"


class TestHostileTokens:
    def test_non_ascii_signature_on_refresh(self, client):
        header = base64.urlsafe_b64encode(b'{"alg":"HS256"}').decode().rstrip("=")
        response = client.post(
            "/auth/refresh", json={"refresh_token": f"{header}.e30.éé"}
        )

        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_token"

    def test_non_ascii_signature_on_bearer(self, client, student):
        tokens = _login(client)
        header, payload, _ = tokens["access_token"].split(".")
        response = client.post(
            "/auth/temporary-token/verify",
            json={"token": f"{header}.{payload}.éé"},
        )
        assert response.status_code == 401

    def test_revoked_token_cannot_end_new_session(self, client, student):
        first = _login(client)
        logout = client.post("/auth/logout", headers=_bearer(first["access_token"]))
        assert logout.status_code == 200
        second = _login(client)

        replay = client.post("/auth/logout", headers=_bearer(first["access_token"]))
        assert replay.status_code == 200

        refreshed = client.post(
            "/auth/refresh", json={"refresh_token": second["refresh_token"]}
        )
        assert refreshed.status_code == 200
