from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountState(str, Enum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    PASSWORD_RESET = "PASSWORD_RESET"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class AttemptReason(str, Enum):
    OK = "OK"
    PASSWORD_RESET = "PASSWORD_RESET"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    BAD_CREDENTIALS = "BAD_CREDENTIALS"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    DEVICE_REQUIRED = "DEVICE_REQUIRED"
    DEVICE_UNAUTHORIZED = "DEVICE_UNAUTHORIZED"
    ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"


class RecoveryKind(str, Enum):
    PASSWORD = "PASSWORD"
    DEVICE = "DEVICE"


class RecoveryStatus(str, Enum):
    PENDING = "PENDING"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"
    SUPERSEDED = "SUPERSEDED"


class DeviceAction(str, Enum):
    LINK = "LINK"
    UNLINK = "UNLINK"
    AUTHORIZE = "AUTHORIZE"
    UNAUTHORIZE = "UNAUTHORIZE"
    DETACH = "DETACH"


@dataclass
class User:
    id: str
    email: str
    national_id: int
    check_digit: str
    state: AccountState = AccountState.ACTIVE
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None
    state_changed_at: Optional[datetime] = None

    @property
    def national_id_display(self) -> str:
        return f"{self.national_id}-{self.check_digit}"


@dataclass
class Device:
    fingerprint: str
    user_id: Optional[str] = None
    authorized: bool = False
    type: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    registered_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_owned(self) -> bool:
        return self.user_id is not None


@dataclass
class DeviceLogEntry:
    id: str
    action: DeviceAction
    user_id: Optional[str]
    fingerprint: str
    type: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def snapshot(
        cls,
        action: DeviceAction,
        device: Device,
        *,
        user_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> "DeviceLogEntry":
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            user_id=user_id if user_id is not None else device.user_id,
            fingerprint=device.fingerprint,
            type=device.type,
            os=device.os,
            browser=device.browser,
            details=details,
        )


@dataclass
class Session:
    jti: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    device_fingerprint: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int,
        device_fingerprint: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            jti=str(uuid.uuid4()),
            user_id=user_id,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            device_fingerprint=device_fingerprint,
            status=SessionStatus.ACTIVE,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class AuthAttempt:
    id: str
    user_id: Optional[str]
    device_fingerprint: str
    session_jti: Optional[str]
    success: bool
    reason: AttemptReason
    occurred_at: datetime


@dataclass
class RecoveryRecord:
    id: str
    kind: RecoveryKind
    user_id: str
    code: str
    requested_at: datetime
    expires_at: datetime
    fingerprint: Optional[str] = None
    status: RecoveryStatus = RecoveryStatus.PENDING
    consumed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        kind: RecoveryKind,
        user_id: str,
        code: str,
        ttl_minutes: int,
        *,
        fingerprint: Optional[str] = None,
        status: RecoveryStatus = RecoveryStatus.PENDING,
        now: Optional[datetime] = None,
    ) -> "RecoveryRecord":
        requested = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            kind=kind,
            user_id=user_id,
            code=code,
            requested_at=requested,
            expires_at=requested + timedelta(minutes=ttl_minutes),
            fingerprint=fingerprint,
            status=status,
        )

    @property
    def consumed(self) -> bool:
        return self.status == RecoveryStatus.CONSUMED
