from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional, Tuple, Union

from payauth.config import Settings
from payauth.logging import get_logger
from payauth.service.attempts import AttemptAuditor, LockoutPolicy
from payauth.service.credentials import CredentialVerifier, validate_password_strength
from payauth.service.devices import (
    MAX_FINGERPRINT_LENGTH,
    DeviceInfo,
    DeviceRegistry,
    normalize_fingerprint,
)
from payauth.service.errors import (
    AuthenticationError,
    ConflictError,
    DeviceConflict,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from payauth.service.events import AccountBlocked, PasswordChanged, UserRegistered
from payauth.service.identifiers import compute_check_digit, resolve_user
from payauth.service.recovery import RecoveryFlowManager, RecoveryTicket
from payauth.service.results import (
    AuthFailure,
    LoginOutcome,
    LoginSuccess,
    LogoutOutcome,
    NoActiveSession,
    PasswordResetDone,
    PasswordResetOutcome,
    RecoveryFailure,
    RecoveryFailureKind,
    SessionRejected,
    SessionRevoked,
)
from payauth.service.sessions import SessionManager, SessionStatusView
from payauth.storage.errors import ConstraintViolation
from payauth.storage.models import (
    AccountState,
    AttemptReason,
    RecoveryKind,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)

_STATE_REASONS = {
    AccountState.BLOCKED: AttemptReason.ACCOUNT_BLOCKED,
    AccountState.PASSWORD_RESET: AttemptReason.PASSWORD_RESET,
}


class AuthService:
    """Login orchestration over the credential, device, session, audit and recovery components.

    Every ``login`` call writes exactly one audit row whatever the branch. Auth
    failures come back as :class:`AuthFailure` values; only malformed input,
    conflicts and infrastructure faults raise. Notifications are never sent
    from here: events are returned to the caller for the dispatcher.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        credentials: Optional[CredentialVerifier] = None,
        devices: Optional[DeviceRegistry] = None,
        sessions: Optional[SessionManager] = None,
        auditor: Optional[AttemptAuditor] = None,
        lockout: Optional[LockoutPolicy] = None,
        recovery: Optional[RecoveryFlowManager] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials or CredentialVerifier(
            store,
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
        )
        self.devices = devices or DeviceRegistry(store, policy=settings.device_trust_policy)
        self.sessions = sessions or SessionManager(store, settings)
        self.auditor = auditor or AttemptAuditor(store, retries=settings.store_write_retries)
        self.lockout = lockout or LockoutPolicy(
            store,
            max_failed_attempts=settings.max_failed_attempts,
            window_minutes=settings.lockout_window_minutes,
        )
        self.recovery = recovery or RecoveryFlowManager(
            store, ttl_minutes=settings.recovery_code_ttl_minutes
        )

    # -- login -------------------------------------------------------------

    async def login(
        self,
        identifier: Optional[str],
        password: Optional[str],
        fingerprint: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
        *,
        now: Optional[datetime] = None,
    ) -> LoginOutcome:
        now = now or utcnow()
        try:
            fingerprint = normalize_fingerprint(fingerprint)
            oversized = False
        except ValidationError:
            # Never bound; the audit row keeps a truncated copy
            fingerprint = fingerprint.strip()[:MAX_FINGERPRINT_LENGTH]
            oversized = True

        if not (identifier or "").strip() or not password:
            return await self._fail(None, fingerprint, AttemptReason.BAD_CREDENTIALS, now)

        user = resolve_user(self.store, identifier)
        if user is None:
            return await self._fail(None, fingerprint, AttemptReason.USER_NOT_FOUND, now)

        state_reason = _STATE_REASONS.get(user.state)
        if state_reason is not None:
            return await self._fail(user.id, fingerprint, state_reason, now)

        verified = await asyncio.to_thread(self.credentials.verify, user.id, password)
        if not verified:
            await self.auditor.log(
                user.id, fingerprint, None, False, AttemptReason.BAD_CREDENTIALS, now
            )
            remaining = self.lockout.remaining_attempts(
                user.id, now, cleared_at=user.state_changed_at
            )
            events: tuple = ()
            if remaining == 0:
                self.lockout.block(user.id)
                events = (AccountBlocked(user_id=user.id, email=user.email, occurred_at=now),)
            logger.info(
                "login_failed",
                reason=AttemptReason.BAD_CREDENTIALS.value,
                user_id=user.id,
                remaining_attempts=remaining,
            )
            return AuthFailure(
                reason=AttemptReason.BAD_CREDENTIALS,
                remaining_attempts=remaining,
                events=events,
            )

        if self.settings.require_email_verified and not user.email_verified:
            return await self._fail(user.id, fingerprint, AttemptReason.EMAIL_NOT_VERIFIED, now)

        if oversized:
            return await self._fail(user.id, fingerprint, AttemptReason.DEVICE_UNAUTHORIZED, now)

        trust = self.devices.trust_for(user.id, fingerprint, device_info)
        if not trust.trusted:
            return await self._fail(user.id, fingerprint, trust.reason, now)

        return await self._open_session(user, fingerprint, now)

    async def _fail(
        self,
        user_id: Optional[str],
        fingerprint: str,
        reason: AttemptReason,
        now: datetime,
    ) -> AuthFailure:
        await self.auditor.log(user_id, fingerprint, None, False, reason, now)
        logger.info("login_failed", reason=reason.value, user_id=user_id)
        return AuthFailure(reason=reason)

    async def _open_session(self, user: User, fingerprint: str, now: datetime) -> LoginSuccess:
        session, token = self.sessions.issue(user.id, fingerprint, now=now)
        self.devices.touch(fingerprint, session.issued_at)
        try:
            await self.auditor.log(user.id, fingerprint, session.jti, True, AttemptReason.OK, now)
        except InfrastructureError:
            self.sessions.revoke(session.jti, "audit_failed", now=now)
            logger.error("login_audit_failed", user_id=user.id, jti=session.jti)
            raise
        logger.info("login_succeeded", user_id=user.id, jti=session.jti)
        return LoginSuccess(
            access_token=token,
            expires_at=session.expires_at,
            jti=session.jti,
            user_id=user.id,
            session=session,
        )

    # -- sessions ----------------------------------------------------------

    async def logout(self, token: str) -> LogoutOutcome:
        payload = self.sessions.decode(token, verify_exp=False)
        if payload is None:
            raise AuthenticationError("invalid access token")
        jti = str(payload["jti"])
        if self.sessions.revoke(jti):
            return SessionRevoked(jti=jti)
        return NoActiveSession(jti=jti)

    async def authenticate(self, token: str, fingerprint: Optional[str] = None) -> Session:
        """Resolve a bearer token to its ACTIVE session or raise ``AuthenticationError``."""
        payload = self.sessions.decode(token, verify_exp=False)
        if payload is None:
            raise AuthenticationError("invalid access token")
        result = self.sessions.validate(str(payload["jti"]))
        if isinstance(result, SessionRejected):
            raise AuthenticationError(
                "session is no longer active", detail={"reason": result.reason.value}
            )
        if payload.get("sub") != result.user_id:
            raise AuthenticationError("invalid access token")
        fingerprint = normalize_fingerprint(fingerprint)
        if fingerprint and result.device_fingerprint and fingerprint != result.device_fingerprint:
            raise AuthenticationError(
                "session is bound to another device",
                detail={"reason": AttemptReason.DEVICE_UNAUTHORIZED.value},
            )
        return result

    async def session_status(
        self, token: str, fingerprint: Optional[str] = None
    ) -> SessionStatusView:
        session = await self.authenticate(token, fingerprint)
        return self.sessions.status(session)

    # -- accounts ----------------------------------------------------------

    async def register_user(
        self,
        email: str,
        national_id: int,
        check_digit: str,
        password: str,
        *,
        email_verified: bool = False,
    ) -> Tuple[User, UserRegistered]:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("invalid email address", detail={"field": "email"})
        if compute_check_digit(national_id) != check_digit.strip().upper():
            raise ValidationError(
                "national id check digit does not match", detail={"field": "check_digit"}
            )
        try:
            validate_password_strength(password)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "password"}) from exc
        try:
            user = self.store.create_user(
                email, national_id, check_digit, email_verified=email_verified
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await asyncio.to_thread(self.credentials.save_password, user.id, password)
        logger.info("user_registered", user_id=user.id)
        return user, UserRegistered(user_id=user.id, email=user.email, occurred_at=user.created_at)

    def unblock_account(self, user_id: str) -> User:
        user = self.lockout.unblock(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def require_password_reset(self, user_id: str) -> User:
        user = self.store.set_account_state(user_id, AccountState.PASSWORD_RESET)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.sessions.revoke_all(user_id, "password_reset_required")
        logger.info("password_reset_required", user_id=user_id)
        return user

    # -- recovery ----------------------------------------------------------

    def start_password_recovery(self, identifier: Optional[str]) -> RecoveryTicket:
        return self.recovery.start(RecoveryKind.PASSWORD, identifier)

    def start_device_recovery(
        self, identifier: Optional[str], fingerprint: Optional[str]
    ) -> RecoveryTicket:
        return self.recovery.start(
            RecoveryKind.DEVICE, identifier, normalize_fingerprint(fingerprint)
        )

    async def complete_device_recovery(
        self,
        recovery_id: str,
        code: str,
        fingerprint: Optional[str],
        device_info: Optional[DeviceInfo] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Union[LoginOutcome, RecoveryFailure]:
        now = now or utcnow()
        fingerprint = normalize_fingerprint(fingerprint)
        if not fingerprint:
            raise ValidationError("device fingerprint required")

        # Refuse before consuming the code when the device already has another owner
        record = self.recovery.store.get_recovery(recovery_id)
        existing = self.devices.get(fingerprint)
        if record and existing and existing.is_owned and existing.user_id != record.user_id:
            raise DeviceConflict("device is linked to another account")

        outcome = self.recovery.verify(
            recovery_id, code, kind=RecoveryKind.DEVICE, fingerprint=fingerprint, now=now
        )
        if isinstance(outcome, RecoveryFailure):
            return outcome

        user = self.store.get_user(outcome.record.user_id)
        if user is None:
            return RecoveryFailure(kind=RecoveryFailureKind.NOT_FOUND)
        state_reason = _STATE_REASONS.get(user.state)
        if state_reason is not None:
            return await self._fail(user.id, fingerprint, state_reason, now)

        self.devices.bind(fingerprint, user.id, authorized=True, info=device_info)
        if self.settings.replace_devices_on_recovery:
            self.devices.unlink_others(user.id, fingerprint)
        logger.info("device_recovered", user_id=user.id)
        return await self._open_session(user, fingerprint, now)

    async def reset_password(
        self,
        recovery_id: str,
        code: str,
        new_password: str,
        *,
        now: Optional[datetime] = None,
    ) -> PasswordResetOutcome:
        try:
            validate_password_strength(new_password or "")
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "new_password"}) from exc

        now = now or utcnow()
        outcome = self.recovery.verify(recovery_id, code, kind=RecoveryKind.PASSWORD, now=now)
        if isinstance(outcome, RecoveryFailure):
            return outcome
        user = self.store.get_user(outcome.record.user_id)
        if user is None:
            return RecoveryFailure(kind=RecoveryFailureKind.NOT_FOUND)

        await asyncio.to_thread(self.credentials.save_password, user.id, new_password)
        self.store.set_account_state(user.id, AccountState.ACTIVE)
        revoked = self.sessions.revoke_all(user.id, "password_reset", now=now)
        logger.info("password_reset_completed", user_id=user.id, revoked_sessions=revoked)
        return PasswordResetDone(
            user_id=user.id,
            revoked_sessions=revoked,
            events=(PasswordChanged(user_id=user.id, email=user.email, occurred_at=now),),
        )
