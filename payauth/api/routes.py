from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from fastapi import APIRouter, Header, HTTPException, Response

from payauth.api.schemas import (
    DeviceDescriptor,
    DeviceRecoveryVerifyRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    PasswordResetConfirm,
    PasswordResetResponse,
    RecoveryStartRequest,
    RecoveryStartResponse,
    SessionStatusResponse,
)
from payauth.logging import get_logger
from payauth.service.devices import DeviceInfo
from payauth.service.events import DomainEvent
from payauth.service.results import (
    AuthFailure,
    LoginSuccess,
    RecoveryFailure,
    SessionRevoked,
    StatusClass,
)
from payauth.service.runtime import check_rate_limit, get_runtime
from payauth.storage.models import AttemptReason

logger = get_logger(__name__)

router = APIRouter()

_FAILURE_MESSAGES = {
    AttemptReason.USER_NOT_FOUND: "invalid credentials",
    AttemptReason.BAD_CREDENTIALS: "invalid credentials",
    AttemptReason.DEVICE_REQUIRED: "a device fingerprint is required",
    AttemptReason.DEVICE_UNAUTHORIZED: "this device is not authorized for the account",
    AttemptReason.ACCOUNT_BLOCKED: "account is blocked",
    AttemptReason.EMAIL_NOT_VERIFIED: "email address is not verified",
    AttemptReason.PASSWORD_RESET: "password reset required",
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit, optionally applying headers; raises 429 when exceeded."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": info.reset_seconds},
        )
    return info


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


def _device_info(device: Optional[DeviceDescriptor]) -> Optional[DeviceInfo]:
    if device is None:
        return None
    return DeviceInfo(type=device.type, os=device.os, browser=device.browser)


async def _dispatch(runtime, events: Iterable[DomainEvent]) -> None:
    events = list(events)
    if events:
        # SMTP delivery blocks, keep it off the event loop
        await asyncio.to_thread(runtime.events.dispatch_all, events)


async def _raise_auth_failure(runtime, failure: AuthFailure) -> None:
    await _dispatch(runtime, failure.events)
    details: dict[str, object] = {"reason": failure.reason.value}
    if failure.remaining_attempts is not None:
        details["remaining_attempts"] = failure.remaining_attempts
    if failure.status_class == StatusClass.FORBIDDEN:
        code, status_code = "forbidden", 403
    else:
        code, status_code = "unauthorized", 401
    raise _http_error(
        code,
        _FAILURE_MESSAGES.get(failure.reason, "authentication failed"),
        status_code=status_code,
        details=details,
    )


def _recovery_error(failure: RecoveryFailure) -> HTTPException:
    return _http_error(
        "validation_error",
        failure.message,
        status_code=400,
        details={"reason": failure.kind.value},
    )


def _login_envelope(outcome: LoginSuccess) -> Envelope:
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=outcome.access_token,
            expires_at=outcome.expires_at,
            jti=outcome.jti,
            user_id=outcome.user_id,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    """Authenticate with an email or national ID and a password.

    Raises:
        401: unknown identifier or wrong password (``details.remaining_attempts``)
        403: device, account state or email verification policy rejected the login
        429: rate limit exceeded for this identifier
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    outcome = await runtime.auth.login(
        body.identifier,
        body.password,
        x_device_fingerprint,
        _device_info(body.device),
    )
    if isinstance(outcome, AuthFailure):
        await _raise_auth_failure(runtime, outcome)
    return _login_envelope(outcome)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the session behind a bearer token; repeating it is a no-op."""
    runtime = get_runtime()
    outcome = await runtime.auth.logout(_bearer_token(authorization))
    return Envelope(
        status="ok", data=LogoutResponse(revoked=isinstance(outcome, SessionRevoked))
    )


@router.get("/auth/session-status", response_model=Envelope, tags=["auth"])
async def session_status(
    authorization: Optional[str] = Header(None),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    runtime = get_runtime()
    view = await runtime.auth.session_status(
        _bearer_token(authorization), x_device_fingerprint
    )
    return Envelope(
        status="ok",
        data=SessionStatusResponse(
            jti=view.jti,
            status=view.status.value,
            expires_at=view.expires_at,
            minutes_remaining=view.minutes_remaining,
        ),
    )


@router.post("/devices/recover/start", response_model=Envelope, tags=["devices"])
async def start_device_recovery(
    body: RecoveryStartRequest,
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    """Email a code that links the calling device to the account.

    The response shape is identical whether or not the identifier exists.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recover:device:{body.identifier.lower()}",
        runtime.settings.recovery_rate_limit_per_minute,
        60,
    )
    ticket = runtime.auth.start_device_recovery(body.identifier, x_device_fingerprint)
    if ticket.event is not None:
        await _dispatch(runtime, [ticket.event])
    return Envelope(status="ok", data=RecoveryStartResponse(recovery_id=ticket.recovery_id))


@router.post("/devices/recover/verify", response_model=Envelope, tags=["devices"])
async def verify_device_recovery(
    body: DeviceRecoveryVerifyRequest,
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recover:verify:{body.recovery_id}",
        runtime.settings.recovery_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.auth.complete_device_recovery(
        body.recovery_id,
        body.code,
        x_device_fingerprint,
        _device_info(body.device),
    )
    if isinstance(outcome, RecoveryFailure):
        raise _recovery_error(outcome)
    if isinstance(outcome, AuthFailure):
        await _raise_auth_failure(runtime, outcome)
    return _login_envelope(outcome)


@router.post("/auth/password/recover", response_model=Envelope, tags=["auth"])
async def start_password_recovery(body: RecoveryStartRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recover:password:{body.identifier.lower()}",
        runtime.settings.recovery_rate_limit_per_minute,
        60,
    )
    ticket = runtime.auth.start_password_recovery(body.identifier)
    if ticket.event is not None:
        await _dispatch(runtime, [ticket.event])
    return Envelope(status="ok", data=RecoveryStartResponse(recovery_id=ticket.recovery_id))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    """Set a new password with a recovery code; unblocks the account and closes all sessions."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recover:verify:{body.recovery_id}",
        runtime.settings.recovery_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.auth.reset_password(body.recovery_id, body.code, body.new_password)
    if isinstance(outcome, RecoveryFailure):
        raise _recovery_error(outcome)
    await _dispatch(runtime, outcome.events)
    return Envelope(
        status="ok",
        data=PasswordResetResponse(revoked_sessions=outcome.revoked_sessions),
    )
