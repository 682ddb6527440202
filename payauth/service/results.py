"""Tagged outcomes returned by the auth services.

Authentication failures are ordinary return values rather than exceptions:
callers branch on the variant (``isinstance``) and the HTTP layer maps the
carried reason and status class to a response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Union

from payauth.storage.models import AttemptReason, RecoveryRecord, Session


class StatusClass(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


_REASON_STATUS = {
    AttemptReason.USER_NOT_FOUND: StatusClass.UNAUTHENTICATED,
    AttemptReason.BAD_CREDENTIALS: StatusClass.UNAUTHENTICATED,
    AttemptReason.DEVICE_REQUIRED: StatusClass.FORBIDDEN,
    AttemptReason.DEVICE_UNAUTHORIZED: StatusClass.FORBIDDEN,
    AttemptReason.ACCOUNT_BLOCKED: StatusClass.FORBIDDEN,
    AttemptReason.EMAIL_NOT_VERIFIED: StatusClass.FORBIDDEN,
    AttemptReason.PASSWORD_RESET: StatusClass.FORBIDDEN,
}


def status_class_for(reason: AttemptReason) -> StatusClass:
    return _REASON_STATUS.get(reason, StatusClass.UNAUTHENTICATED)


@dataclass(frozen=True)
class LoginSuccess:
    access_token: str
    expires_at: datetime
    jti: str
    user_id: str
    session: Session


@dataclass(frozen=True)
class AuthFailure:
    reason: AttemptReason
    remaining_attempts: Optional[int] = None
    events: Tuple[object, ...] = field(default_factory=tuple)

    @property
    def status_class(self) -> StatusClass:
        return status_class_for(self.reason)


LoginOutcome = Union[LoginSuccess, AuthFailure]


@dataclass(frozen=True)
class SessionRevoked:
    jti: str


@dataclass(frozen=True)
class NoActiveSession:
    """Logout found nothing to revoke; safe to repeat."""

    jti: Optional[str] = None


LogoutOutcome = Union[SessionRevoked, NoActiveSession]


class SessionRejection(str, Enum):
    UNKNOWN = "UNKNOWN"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class SessionRejected:
    jti: str
    reason: SessionRejection


class RecoveryFailureKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    ALREADY_CONSUMED = "ALREADY_CONSUMED"
    CODE_MISMATCH = "CODE_MISMATCH"
    FINGERPRINT_MISMATCH = "FINGERPRINT_MISMATCH"


RECOVERY_FAILURE_MESSAGE = "invalid or expired code"


@dataclass(frozen=True)
class RecoveryVerified:
    record: RecoveryRecord


@dataclass(frozen=True)
class RecoveryFailure:
    kind: RecoveryFailureKind

    @property
    def message(self) -> str:
        return RECOVERY_FAILURE_MESSAGE


RecoveryOutcome = Union[RecoveryVerified, RecoveryFailure]


@dataclass(frozen=True)
class PasswordResetDone:
    user_id: str
    revoked_sessions: int
    events: Tuple[object, ...] = field(default_factory=tuple)


PasswordResetOutcome = Union[PasswordResetDone, RecoveryFailure]
