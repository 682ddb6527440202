"""Tests for session issuance, validation and revocation."""

import base64
import json
from datetime import timedelta

import pytest

from payauth.service.results import SessionRejected, SessionRejection
from payauth.service.sessions import SessionManager, fingerprint_hash
from payauth.storage.models import SessionStatus, utcnow


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("ana@example.com", 12345678, "5")


@pytest.fixture
def sessions(memory_store, settings):
    return SessionManager(memory_store, settings)


def _claims(token):
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestIssue:
    """Tests for session issuance."""

    def test_issue_stores_active_session(self, sessions, memory_store, user):
        """Test that an issued session is persisted as ACTIVE with the configured TTL."""
        session, token = sessions.issue(user.id, "fp-1")

        stored = memory_store.get_session(session.jti)
        assert stored.status == SessionStatus.ACTIVE
        assert stored.device_fingerprint == "fp-1"
        assert stored.expires_at - stored.issued_at == timedelta(minutes=15)
        assert token.count(".") == 2

    def test_token_claims(self, sessions, settings, user):
        session, token = sessions.issue(user.id, "fp-1")
        claims = _claims(token)

        assert claims["sub"] == user.id
        assert claims["jti"] == session.jti
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["dfp"] == fingerprint_hash("fp-1")
        assert "fp-1" not in token

    def test_token_without_fingerprint_has_no_dfp(self, sessions, user):
        _, token = sessions.issue(user.id, None)
        assert "dfp" not in _claims(token)

    def test_each_session_has_unique_jti(self, sessions, user):
        jtis = {sessions.issue(user.id, "fp")[0].jti for _ in range(5)}
        assert len(jtis) == 5


class TestDecode:
    """Tests for access token decoding."""

    def test_round_trip(self, sessions, user):
        session, token = sessions.issue(user.id, "fp-1")
        assert sessions.decode(token)["jti"] == session.jti

    def test_tampered_payload_rejected(self, sessions, user):
        _, token = sessions.issue(user.id, "fp-1")
        head, _, sig = token.split(".")
        claims = _claims(token)
        claims["sub"] = "someone-else"
        payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
        assert sessions.decode(f"{head}.{payload}.{sig}") is None

    def test_other_secret_rejected(self, memory_store, settings, user):
        _, token = SessionManager(memory_store, settings).issue(user.id, "fp-1")
        other = settings.model_copy(update={"jwt_secret": "another-secret-another-secret-1234"})
        assert SessionManager(memory_store, other).decode(token) is None

    def test_alg_none_rejected(self, sessions, user):
        _, token = sessions.issue(user.id, "fp-1")
        _, payload, sig = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        assert sessions.decode(f"{header}.{payload}.{sig}") is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, sessions, token):
        assert sessions.decode(token) is None

    def test_expired_token_only_decodes_without_exp_check(self, sessions, user):
        past = utcnow() - timedelta(hours=2)
        _, token = sessions.issue(user.id, "fp-1", now=past)

        assert sessions.decode(token) is None
        assert sessions.decode(token, verify_exp=False) is not None


class TestValidate:
    """Tests for store-backed session validation."""

    def test_active_session_is_returned(self, sessions, user):
        session, _ = sessions.issue(user.id, "fp-1")
        assert sessions.validate(session.jti).jti == session.jti

    def test_unknown_session(self, sessions):
        result = sessions.validate("missing")
        assert isinstance(result, SessionRejected)
        assert result.reason == SessionRejection.UNKNOWN

    def test_past_expiry_moves_to_expired(self, sessions, memory_store, user):
        """Test that an ACTIVE session past its expiry is lazily marked EXPIRED."""
        session, _ = sessions.issue(user.id, "fp-1")

        result = sessions.validate(session.jti, now=session.expires_at + timedelta(seconds=1))

        assert result.reason == SessionRejection.EXPIRED
        assert memory_store.get_session(session.jti).status == SessionStatus.EXPIRED

    def test_revoked_session_rejected(self, sessions, user):
        session, _ = sessions.issue(user.id, "fp-1")
        sessions.revoke(session.jti)
        assert sessions.validate(session.jti).reason == SessionRejection.REVOKED


class TestRevoke:
    """Tests for revocation."""

    def test_revoke_is_idempotent(self, sessions, memory_store, user):
        session, _ = sessions.issue(user.id, "fp-1")

        assert sessions.revoke(session.jti) is True
        assert sessions.revoke(session.jti) is False

        stored = memory_store.get_session(session.jti)
        assert stored.status == SessionStatus.REVOKED
        assert stored.close_reason == "logout"
        assert stored.closed_at is not None

    def test_revoke_after_expiry_marks_expired(self, sessions, memory_store, user):
        session, _ = sessions.issue(user.id, "fp-1")

        revoked = sessions.revoke(session.jti, now=session.expires_at + timedelta(minutes=1))

        assert revoked is False
        assert memory_store.get_session(session.jti).status == SessionStatus.EXPIRED

    def test_revoke_all(self, sessions, memory_store, user):
        for _ in range(3):
            sessions.issue(user.id, "fp-1")
        other = memory_store.create_user("bob@example.com", 11111111, "1")
        other_session, _ = sessions.issue(other.id, "fp-2")

        assert sessions.revoke_all(user.id, "password_reset") == 3
        assert memory_store.list_sessions_for_user(user.id, SessionStatus.ACTIVE) == []
        assert memory_store.get_session(other_session.jti).status == SessionStatus.ACTIVE

    def test_status_minutes_remaining(self, sessions, user):
        session, _ = sessions.issue(user.id, "fp-1")
        view = sessions.status(session, now=session.issued_at + timedelta(minutes=5))
        assert view.minutes_remaining == 10
        assert view.status == SessionStatus.ACTIVE
