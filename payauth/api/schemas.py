from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from payauth.service.credentials import MAX_PASSWORD_LENGTH, validate_password_strength

MAX_IDENTIFIER_LENGTH = 254

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_identifier(value: str) -> str:
    # NFKC folds full-width digits and look-alike characters before parsing
    return unicodedata.normalize("NFKC", value).strip()


class DeviceDescriptor(BaseModel):
    type: Optional[str] = Field(default=None, max_length=32)
    os: Optional[str] = Field(default=None, max_length=64)
    browser: Optional[str] = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    identifier: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    device: Optional[DeviceDescriptor] = None

    @field_validator("identifier")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_identifier(value)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    jti: str
    user_id: str


class LogoutResponse(BaseModel):
    revoked: bool


class SessionStatusResponse(BaseModel):
    jti: str
    status: str
    expires_at: datetime
    minutes_remaining: int


class RecoveryStartRequest(BaseModel):
    identifier: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_identifier(value)


class RecoveryStartResponse(BaseModel):
    recovery_id: str


class DeviceRecoveryVerifyRequest(BaseModel):
    recovery_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)
    device: Optional[DeviceDescriptor] = None


class PasswordResetConfirm(BaseModel):
    recovery_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class PasswordResetResponse(BaseModel):
    reset: bool = True
    revoked_sessions: int
