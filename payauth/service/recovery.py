"""Time-boxed recovery codes for password reset and device recovery.

A recovery starts by resolving the account from a login identifier and
storing a PENDING record holding a six digit code. Starting a new recovery
supersedes the user's older PENDING records of the same kind, so only the
newest code is usable. Verification consumes the record exactly once through
a compare-and-set on its status; every failure is reported to clients with
the same message so a caller cannot tell an unknown id from a wrong or stale
code.
"""

from __future__ import annotations

import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from payauth.logging import get_logger
from payauth.service.errors import ValidationError
from payauth.service.events import RecoveryCodeIssued
from payauth.service.identifiers import UserLookup, resolve_user
from payauth.service.results import (
    RecoveryFailure,
    RecoveryFailureKind,
    RecoveryOutcome,
    RecoveryVerified,
)
from payauth.storage.models import RecoveryKind, RecoveryRecord, RecoveryStatus, utcnow

logger = get_logger(__name__)

CODE_DIGITS = 6


class RecoveryStore(UserLookup, Protocol):
    def create_recovery(self, record: RecoveryRecord) -> RecoveryRecord: ...

    def get_recovery(self, recovery_id: str) -> Optional[RecoveryRecord]: ...

    def supersede_pending_recoveries(self, user_id: str, kind: RecoveryKind) -> int: ...

    def transition_recovery(
        self,
        recovery_id: str,
        from_status: RecoveryStatus,
        to_status: RecoveryStatus,
        *,
        at: datetime,
    ) -> Optional[RecoveryRecord]: ...


@dataclass(frozen=True)
class RecoveryTicket:
    """Result of starting a recovery.

    ``event`` is ``None`` when the identifier matched no account; the
    recovery id is then random and verifies as NOT_FOUND.
    """

    recovery_id: str
    event: Optional[RecoveryCodeIssued] = None


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"


class RecoveryFlowManager:
    def __init__(self, store: RecoveryStore, *, ttl_minutes: int = 10) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes

    def start(
        self,
        kind: RecoveryKind,
        identifier: Optional[str],
        fingerprint: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> RecoveryTicket:
        if kind == RecoveryKind.DEVICE and not fingerprint:
            raise ValidationError("device fingerprint required")
        user = resolve_user(self.store, identifier)
        if user is None:
            logger.info("recovery_start_unknown_identifier", kind=kind.value)
            return RecoveryTicket(recovery_id=str(uuid.uuid4()))

        superseded = self.store.supersede_pending_recoveries(user.id, kind)
        if superseded:
            logger.info("recovery_superseded", user_id=user.id, kind=kind.value, count=superseded)

        record = RecoveryRecord.new(
            kind,
            user.id,
            generate_code(),
            self.ttl_minutes,
            fingerprint=fingerprint if kind == RecoveryKind.DEVICE else None,
            now=now,
        )
        record = self.store.create_recovery(record)
        logger.info("recovery_started", user_id=user.id, kind=kind.value, recovery_id=record.id)
        return RecoveryTicket(
            recovery_id=record.id,
            event=RecoveryCodeIssued(
                user_id=user.id,
                email=user.email,
                kind=kind,
                recovery_id=record.id,
                code=record.code,
                expires_at=record.expires_at,
            ),
        )

    def verify(
        self,
        recovery_id: str,
        code: str,
        *,
        kind: RecoveryKind,
        fingerprint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecoveryOutcome:
        now = now or utcnow()
        record = self.store.get_recovery(recovery_id)
        if record is None or record.kind != kind:
            return self._fail(recovery_id, RecoveryFailureKind.NOT_FOUND)

        if now > record.expires_at:
            if record.status == RecoveryStatus.PENDING:
                self.store.transition_recovery(
                    record.id, RecoveryStatus.PENDING, RecoveryStatus.EXPIRED, at=now
                )
            return self._fail(recovery_id, RecoveryFailureKind.EXPIRED)
        if record.consumed:
            return self._fail(recovery_id, RecoveryFailureKind.ALREADY_CONSUMED)
        if record.status != RecoveryStatus.PENDING:
            return self._fail(recovery_id, RecoveryFailureKind.EXPIRED)
        if not hmac.compare_digest(record.code.encode(), (code or "").strip().encode()):
            return self._fail(recovery_id, RecoveryFailureKind.CODE_MISMATCH)
        if kind == RecoveryKind.DEVICE and record.fingerprint != fingerprint:
            return self._fail(recovery_id, RecoveryFailureKind.FINGERPRINT_MISMATCH)

        consumed = self.store.transition_recovery(
            record.id, RecoveryStatus.PENDING, RecoveryStatus.CONSUMED, at=now
        )
        if consumed is None:
            return self._fail(recovery_id, RecoveryFailureKind.ALREADY_CONSUMED)
        logger.info("recovery_verified", user_id=consumed.user_id, kind=kind.value)
        return RecoveryVerified(record=consumed)

    def _fail(self, recovery_id: str, kind: RecoveryFailureKind) -> RecoveryFailure:
        logger.info("recovery_verify_failed", recovery_id=recovery_id, failure=kind.value)
        return RecoveryFailure(kind=kind)
