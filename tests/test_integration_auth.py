"""Integration tests for the HTTP auth flow.

Tests the complete flow over the API including:
- Login with email or national ID and a device fingerprint
- Lockout after repeated bad passwords
- Session status and logout
- Device recovery
- Password recovery and reset
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from payauth import app as app_module
from payauth.service.runtime import get_runtime
from payauth.storage.models import AccountState, AttemptReason, SessionStatus

PASSWORD = "S3cure pass!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user():
    user, _ = asyncio.run(
        get_runtime().auth.register_user("ana@example.com", 12345678, "5", PASSWORD)
    )
    return user


def _login(client, identifier="ana@example.com", password=PASSWORD, fingerprint="fp-1"):
    headers = {"X-Device-Fingerprint": fingerprint} if fingerprint else {}
    return client.post(
        "/auth/login",
        json={"identifier": identifier, "password": password},
        headers=headers,
    )


def _bearer(token, fingerprint=None):
    headers = {"Authorization": f"Bearer {token}"}
    if fingerprint:
        headers["X-Device-Fingerprint"] = fingerprint
    return headers


def _code(recovery_id):
    return get_runtime().store.get_recovery(recovery_id).code


class TestLoginFlow:
    """Tests for POST /auth/login."""

    def test_login_returns_token(self, client, test_user):
        """Test that a valid login returns a bearer token in the envelope."""
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["user_id"] == test_user.id
        assert body["data"]["access_token"]
        assert body["data"]["jti"]
        assert response.headers["X-RateLimit-Limit"] == "10"

    def test_login_with_national_id(self, client, test_user):
        response = _login(client, identifier="12.345.678-5")
        assert response.status_code == 200

    def test_wrong_password(self, client, test_user):
        response = _login(client, password="wrong password")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "invalid credentials"
        assert error["details"] == {"reason": "BAD_CREDENTIALS", "remaining_attempts": 4}

    def test_unknown_user_uses_same_message(self, client):
        response = _login(client, identifier="nobody@example.com")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_missing_fingerprint_is_forbidden(self, client, test_user):
        response = _login(client, fingerprint=None)

        assert response.status_code == 403
        assert response.json()["error"]["details"]["reason"] == "DEVICE_REQUIRED"
        store = get_runtime().store
        attempts = store.list_attempts(user_id=test_user.id)
        assert [(a.reason, a.success) for a in attempts] == [
            (AttemptReason.DEVICE_REQUIRED, False)
        ]
        assert store.list_sessions_for_user(test_user.id) == []

    def test_overlong_fingerprint_is_forbidden(self, client, test_user):
        response = _login(client, fingerprint="f" * 300)

        assert response.status_code == 403
        assert response.json()["error"]["details"]["reason"] == "DEVICE_UNAUTHORIZED"
        assert len(get_runtime().store.list_attempts(user_id=test_user.id)) == 1

    def test_second_device_is_forbidden(self, client, test_user):
        assert _login(client).status_code == 200

        response = _login(client, fingerprint="fp-2")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert response.json()["error"]["details"]["reason"] == "DEVICE_UNAUTHORIZED"

    def test_lockout_then_blocked(self, client, test_user):
        """Test that the fifth bad password blocks the account for later logins."""
        for expected in (4, 3, 2, 1, 0):
            response = _login(client, password="wrong password")
            assert response.status_code == 401
            assert response.json()["error"]["details"]["remaining_attempts"] == expected

        response = _login(client)

        assert response.status_code == 403
        assert response.json()["error"]["details"]["reason"] == "ACCOUNT_BLOCKED"
        assert get_runtime().store.get_user(test_user.id).state == AccountState.BLOCKED

    def test_missing_fields_are_validation_errors(self, client):
        response = client.post("/auth/login", json={"identifier": "ana@example.com"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert any(d["field"] == "password" for d in body["error"]["details"])

    def test_login_rate_limited_per_identifier(self, client, test_user):
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            _login(client, identifier="nobody@example.com")

        response = _login(client, identifier="nobody@example.com")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.json()["error"]["details"]["retry_after_seconds"] >= 1
        assert _login(client).status_code == 200


class TestSessionFlow:
    """Tests for session status and logout."""

    def test_session_status(self, client, test_user):
        token = _login(client).json()["data"]["access_token"]

        response = client.get("/auth/session-status", headers=_bearer(token, "fp-1"))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "ACTIVE"
        assert 0 < data["minutes_remaining"] <= 60

    def test_session_status_without_token(self, client):
        response = client.get("/auth/session-status")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_session_status_from_other_device(self, client, test_user):
        token = _login(client).json()["data"]["access_token"]
        response = client.get("/auth/session-status", headers=_bearer(token, "fp-2"))
        assert response.status_code == 401

    def test_logout_twice(self, client, test_user):
        """Test that logout is idempotent."""
        data = _login(client).json()["data"]

        first = client.post("/auth/logout", headers=_bearer(data["access_token"]))
        second = client.post("/auth/logout", headers=_bearer(data["access_token"]))

        assert first.json()["data"] == {"revoked": True}
        assert second.status_code == 200
        assert second.json()["data"] == {"revoked": False}
        assert get_runtime().store.get_session(data["jti"]).status == SessionStatus.REVOKED

        status = client.get("/auth/session-status", headers=_bearer(data["access_token"]))
        assert status.status_code == 401

    def test_logout_with_invalid_token(self, client):
        response = client.post("/auth/logout", headers=_bearer("garbage"))
        assert response.status_code == 401


class TestDeviceRecoveryFlow:
    """Tests for /devices/recover/*."""

    def test_recover_new_device(self, client, test_user):
        assert _login(client).status_code == 200
        assert _login(client, fingerprint="fp-new").status_code == 403

        start = client.post(
            "/devices/recover/start",
            json={"identifier": "ana@example.com"},
            headers={"X-Device-Fingerprint": "fp-new"},
        )
        assert start.status_code == 200
        recovery_id = start.json()["data"]["recovery_id"]

        verify = client.post(
            "/devices/recover/verify",
            json={
                "recovery_id": recovery_id,
                "code": _code(recovery_id),
                "device": {"type": "phone", "os": "Android"},
            },
            headers={"X-Device-Fingerprint": "fp-new"},
        )

        assert verify.status_code == 200
        assert verify.json()["data"]["user_id"] == test_user.id
        assert _login(client, fingerprint="fp-new").status_code == 200
        assert _login(client, fingerprint="fp-1").status_code == 403

    def test_unknown_identifier_has_same_shape(self, client):
        response = client.post(
            "/devices/recover/start",
            json={"identifier": "nobody@example.com"},
            headers={"X-Device-Fingerprint": "fp-new"},
        )
        assert response.status_code == 200
        assert set(response.json()["data"]) == {"recovery_id"}

    def test_start_requires_fingerprint(self, client, test_user):
        response = client.post("/devices/recover/start", json={"identifier": "ana@example.com"})
        assert response.status_code == 400

    def test_wrong_code(self, client, test_user):
        start = client.post(
            "/devices/recover/start",
            json={"identifier": "ana@example.com"},
            headers={"X-Device-Fingerprint": "fp-new"},
        )
        recovery_id = start.json()["data"]["recovery_id"]
        wrong = "000000" if _code(recovery_id) != "000000" else "111111"

        response = client.post(
            "/devices/recover/verify",
            json={"recovery_id": recovery_id, "code": wrong},
            headers={"X-Device-Fingerprint": "fp-new"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "invalid or expired code"
        assert error["details"] == {"reason": "CODE_MISMATCH"}

    def test_device_of_other_account_conflicts(self, client, test_user):
        asyncio.run(
            get_runtime().auth.register_user("bob@example.com", 11111111, "1", PASSWORD)
        )
        assert _login(client, identifier="bob@example.com", fingerprint="fp-bob").status_code == 200
        start = client.post(
            "/devices/recover/start",
            json={"identifier": "ana@example.com"},
            headers={"X-Device-Fingerprint": "fp-bob"},
        )
        recovery_id = start.json()["data"]["recovery_id"]

        response = client.post(
            "/devices/recover/verify",
            json={"recovery_id": recovery_id, "code": _code(recovery_id)},
            headers={"X-Device-Fingerprint": "fp-bob"},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"


class TestPasswordRecoveryFlow:
    """Tests for /auth/password/*."""

    def test_reset_unblocks_account(self, client, test_user):
        """Test that a completed reset unblocks the account and revokes open sessions."""
        token = _login(client).json()["data"]["access_token"]
        for _ in range(5):
            _login(client, password="wrong password")
        assert _login(client).status_code == 403

        start = client.post("/auth/password/recover", json={"identifier": "12345678-5"})
        recovery_id = start.json()["data"]["recovery_id"]
        reset = client.post(
            "/auth/password/reset",
            json={
                "recovery_id": recovery_id,
                "code": _code(recovery_id),
                "new_password": "Brand new pass",
            },
        )

        assert reset.status_code == 200
        assert reset.json()["data"] == {"reset": True, "revoked_sessions": 1}
        assert client.get("/auth/session-status", headers=_bearer(token)).status_code == 401
        assert _login(client, password="Brand new pass").status_code == 200

    def test_reset_code_is_single_use(self, client, test_user):
        start = client.post("/auth/password/recover", json={"identifier": "ana@example.com"})
        recovery_id = start.json()["data"]["recovery_id"]
        body = {
            "recovery_id": recovery_id,
            "code": _code(recovery_id),
            "new_password": "Brand new pass",
        }

        assert client.post("/auth/password/reset", json=body).status_code == 200
        again = client.post("/auth/password/reset", json=body)

        assert again.status_code == 400
        assert again.json()["error"]["details"] == {"reason": "ALREADY_CONSUMED"}

    def test_reset_rejects_weak_password(self, client):
        response = client.post(
            "/auth/password/reset",
            json={"recovery_id": "r", "code": "123456", "new_password": "short"},
        )
        assert response.status_code == 400

    def test_recover_unknown_identifier(self, client):
        response = client.post("/auth/password/recover", json={"identifier": "nobody@example.com"})
        assert response.status_code == 200
        assert response.json()["data"]["recovery_id"]


class TestHealthAndMiddleware:
    """Tests for /healthz and the HTTP middleware."""

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_carries_request_id(self, client):
        response = _login(client, identifier="nobody@example.com", fingerprint="fp-1")
        assert response.json()["request_id"] == response.headers["X-Request-ID"]

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
