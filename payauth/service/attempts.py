from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Optional, Protocol

from payauth.logging import get_logger
from payauth.service.errors import InfrastructureError
from payauth.storage.errors import StoreUnavailable
from payauth.storage.models import (
    AccountState,
    AttemptReason,
    AuthAttempt,
    User,
    utcnow,
)

logger = get_logger(__name__)


class AttemptStore(Protocol):
    def append_attempt(self, attempt: AuthAttempt) -> AuthAttempt: ...

    def count_attempts_since(
        self, user_id: str, since: datetime, reason: AttemptReason
    ) -> int: ...

    def last_success_at(self, user_id: str) -> Optional[datetime]: ...

    def set_account_state(self, user_id: str, state: AccountState) -> Optional[User]: ...


class AttemptAuditor:
    """Append-only audit of login attempts.

    A write that fails with ``StoreUnavailable`` is retried with the same
    attempt id, so a retry after a write that actually landed cannot produce
    a second row. Exhausted retries raise ``InfrastructureError``.
    """

    def __init__(
        self,
        store: AttemptStore,
        *,
        retries: int = 2,
        backoff_seconds: float = 0.05,
    ) -> None:
        self.store = store
        self.retries = retries
        self.backoff_seconds = backoff_seconds

    async def log(
        self,
        user_id: Optional[str],
        fingerprint: Optional[str],
        session_jti: Optional[str],
        success: bool,
        reason: AttemptReason,
        occurred_at: Optional[datetime] = None,
    ) -> AuthAttempt:
        attempt = AuthAttempt(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_fingerprint=fingerprint or "",
            session_jti=session_jti,
            success=success,
            reason=reason,
            occurred_at=occurred_at or utcnow(),
        )
        for try_number in range(self.retries + 1):
            try:
                return self.store.append_attempt(attempt)
            except StoreUnavailable as exc:
                logger.warning(
                    "attempt_write_failed",
                    attempt_id=attempt.id,
                    try_number=try_number + 1,
                    error=exc.message,
                )
                if try_number < self.retries:
                    await asyncio.sleep(self.backoff_seconds * (try_number + 1))
                    continue
                raise InfrastructureError("audit store unavailable") from exc
        raise InfrastructureError("audit store unavailable")


class LockoutPolicy:
    """Counts BAD_CREDENTIALS attempts since the later of the last success and the window start."""

    def __init__(
        self,
        store: AttemptStore,
        *,
        max_failed_attempts: int = 5,
        window_minutes: int = 30,
    ) -> None:
        self.store = store
        self.max_failed_attempts = max_failed_attempts
        self.window = timedelta(minutes=window_minutes)

    def remaining_attempts(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        *,
        cleared_at: Optional[datetime] = None,
    ) -> int:
        """``cleared_at`` is when the account was last unblocked or reset; earlier failures no longer count."""
        now = now or utcnow()
        since = now - self.window
        for marker in (self.store.last_success_at(user_id), cleared_at):
            if marker and marker > since:
                since = marker
        failures = self.store.count_attempts_since(
            user_id, since, AttemptReason.BAD_CREDENTIALS
        )
        return max(self.max_failed_attempts - failures, 0)

    def block(self, user_id: str) -> Optional[User]:
        user = self.store.set_account_state(user_id, AccountState.BLOCKED)
        logger.warning("account_blocked", user_id=user_id)
        return user

    def unblock(self, user_id: str) -> Optional[User]:
        user = self.store.set_account_state(user_id, AccountState.ACTIVE)
        logger.info("account_unblocked", user_id=user_id)
        return user
