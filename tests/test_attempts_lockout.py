"""Tests for the attempt auditor and the lockout policy."""

from datetime import timedelta

import pytest

from payauth.service.attempts import AttemptAuditor, LockoutPolicy
from payauth.service.errors import InfrastructureError
from payauth.storage.errors import StoreUnavailable
from payauth.storage.models import AccountState, AttemptReason, AuthAttempt, utcnow


class FlakyStore:
    """Wraps a store and fails the first ``failures`` attempt writes."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.calls = []

    def append_attempt(self, attempt):
        self.calls.append(attempt.id)
        if len(self.calls) <= self.failures:
            raise StoreUnavailable("write timed out", operation="append_attempt")
        return self.inner.append_attempt(attempt)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("ana@example.com", 12345678, "5")


class TestAttemptAuditor:
    """Tests for audit writes."""

    async def test_log_writes_one_row(self, memory_store, user):
        auditor = AttemptAuditor(memory_store)

        attempt = await auditor.log(user.id, "fp-1", None, False, AttemptReason.BAD_CREDENTIALS)

        rows = memory_store.list_attempts(user_id=user.id)
        assert [r.id for r in rows] == [attempt.id]
        assert rows[0].device_fingerprint == "fp-1"

    async def test_missing_fingerprint_stored_as_empty(self, memory_store):
        attempt = await AttemptAuditor(memory_store).log(
            None, None, None, False, AttemptReason.USER_NOT_FOUND
        )
        assert attempt.device_fingerprint == ""
        assert attempt.user_id is None

    async def test_retry_reuses_attempt_id(self, memory_store, user):
        """Test that a retried write keeps the same id so it cannot duplicate the row."""
        store = FlakyStore(memory_store, failures=2)
        auditor = AttemptAuditor(store, retries=2, backoff_seconds=0)

        attempt = await auditor.log(user.id, "fp-1", None, False, AttemptReason.BAD_CREDENTIALS)

        assert store.calls == [attempt.id] * 3
        assert len(memory_store.list_attempts(user_id=user.id)) == 1

    async def test_exhausted_retries_raise_infrastructure_error(self, memory_store, user):
        store = FlakyStore(memory_store, failures=5)
        auditor = AttemptAuditor(store, retries=1, backoff_seconds=0)

        with pytest.raises(InfrastructureError):
            await auditor.log(user.id, "fp-1", None, False, AttemptReason.BAD_CREDENTIALS)
        assert len(store.calls) == 2
        assert memory_store.list_attempts(user_id=user.id) == []


class TestLockoutPolicy:
    """Tests for counting failed attempts."""

    async def _fail(self, auditor, user_id, at, reason=AttemptReason.BAD_CREDENTIALS):
        await auditor.log(user_id, "fp-1", None, False, reason, at)

    async def test_counts_bad_credentials_in_window(self, memory_store, user):
        auditor = AttemptAuditor(memory_store)
        policy = LockoutPolicy(memory_store, max_failed_attempts=3, window_minutes=30)
        now = utcnow()

        assert policy.remaining_attempts(user.id, now) == 3
        await self._fail(auditor, user.id, now - timedelta(minutes=1))
        await self._fail(auditor, user.id, now - timedelta(minutes=45))
        await self._fail(auditor, user.id, now, AttemptReason.DEVICE_UNAUTHORIZED)

        assert policy.remaining_attempts(user.id, now) == 2

    async def test_success_resets_count(self, memory_store, user):
        auditor = AttemptAuditor(memory_store)
        policy = LockoutPolicy(memory_store, max_failed_attempts=3)
        now = utcnow()

        await self._fail(auditor, user.id, now - timedelta(minutes=3))
        await self._fail(auditor, user.id, now - timedelta(minutes=2))
        await auditor.log(user.id, "fp-1", "jti", True, AttemptReason.OK, now - timedelta(minutes=1))
        await self._fail(auditor, user.id, now)

        assert policy.remaining_attempts(user.id, now) == 2

    async def test_cleared_at_discards_earlier_failures(self, memory_store, user):
        auditor = AttemptAuditor(memory_store)
        policy = LockoutPolicy(memory_store, max_failed_attempts=3)
        now = utcnow()

        for minutes in (5, 4, 3):
            await self._fail(auditor, user.id, now - timedelta(minutes=minutes))
        assert policy.remaining_attempts(user.id, now) == 0

        cleared = now - timedelta(minutes=2)
        assert policy.remaining_attempts(user.id, now, cleared_at=cleared) == 3

    def test_remaining_never_negative(self, memory_store, user):
        policy = LockoutPolicy(memory_store, max_failed_attempts=1)
        now = utcnow()
        for i in range(3):
            memory_store.append_attempt(
                AuthAttempt(
                    id=f"a-{i}",
                    user_id=user.id,
                    device_fingerprint="",
                    session_jti=None,
                    success=False,
                    reason=AttemptReason.BAD_CREDENTIALS,
                    occurred_at=now,
                )
            )
        assert policy.remaining_attempts(user.id, now) == 0

    def test_block_and_unblock(self, memory_store, user):
        policy = LockoutPolicy(memory_store)

        assert policy.block(user.id).state == AccountState.BLOCKED
        assert policy.unblock(user.id).state == AccountState.ACTIVE
        assert policy.block("missing") is None
