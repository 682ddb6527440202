from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Protocol, Tuple, Union

from payauth.config import Settings
from payauth.logging import get_logger
from payauth.service.results import SessionRejected, SessionRejection
from payauth.storage.models import Session, SessionStatus, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, jti: str) -> Optional[Session]: ...

    def transition_session(
        self,
        jti: str,
        from_status: SessionStatus,
        to_status: SessionStatus,
        *,
        at: datetime,
        reason: Optional[str] = None,
    ) -> Optional[Session]: ...

    def list_sessions_for_user(
        self, user_id: str, status: Optional[SessionStatus] = None
    ) -> List[Session]: ...


@dataclass(frozen=True)
class SessionStatusView:
    jti: str
    status: SessionStatus
    expires_at: datetime
    minutes_remaining: int


def fingerprint_hash(fingerprint: Optional[str]) -> Optional[str]:
    if not fingerprint:
        return None
    return hashlib.sha256(fingerprint.encode()).hexdigest()[:32]


class SessionManager:
    """Issues, validates and revokes sessions backed by HS256 access tokens.

    The token only carries the session id (``jti``); whether a session is
    still usable is always decided by re-reading the store.
    """

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=30)

    def issue(
        self, user_id: str, fingerprint: Optional[str], *, now: Optional[datetime] = None
    ) -> Tuple[Session, str]:
        session = Session.new(
            user_id,
            self.settings.access_token_ttl_minutes,
            fingerprint or None,
            now=now,
        )
        session = self.store.create_session(session)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "jti": session.jti,
            "iat": int(session.issued_at.timestamp()),
            "exp": int(session.expires_at.timestamp()),
        }
        dfp = fingerprint_hash(fingerprint)
        if dfp:
            payload["dfp"] = dfp
        logger.info("session_issued", user_id=user_id, jti=session.jti)
        return session, self._encode_jwt(payload)

    def decode(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, verify_exp=verify_exp)

    def validate(
        self, jti: str, *, now: Optional[datetime] = None
    ) -> Union[Session, SessionRejected]:
        now = now or utcnow()
        session = self.store.get_session(jti)
        if session is None:
            return SessionRejected(jti=jti, reason=SessionRejection.UNKNOWN)
        if session.status == SessionStatus.REVOKED:
            return SessionRejected(jti=jti, reason=SessionRejection.REVOKED)
        if session.status == SessionStatus.EXPIRED:
            return SessionRejected(jti=jti, reason=SessionRejection.EXPIRED)
        if session.is_expired(now):
            self._expire(session, now)
            return SessionRejected(jti=jti, reason=SessionRejection.EXPIRED)
        return session

    def revoke(
        self, jti: str, reason: str = "logout", *, now: Optional[datetime] = None
    ) -> bool:
        """Move an ACTIVE session to REVOKED; sessions already past expiry become EXPIRED."""
        now = now or utcnow()
        session = self.store.get_session(jti)
        if session is None or session.status != SessionStatus.ACTIVE:
            return False
        if session.is_expired(now):
            self._expire(session, now)
            return False
        revoked = self.store.transition_session(
            jti, SessionStatus.ACTIVE, SessionStatus.REVOKED, at=now, reason=reason
        )
        if revoked:
            logger.info("session_revoked", jti=jti, reason=reason)
        return revoked is not None

    def revoke_all(self, user_id: str, reason: str, *, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        count = 0
        for session in self.store.list_sessions_for_user(user_id, SessionStatus.ACTIVE):
            if self.revoke(session.jti, reason, now=now):
                count += 1
        if count:
            logger.info("sessions_revoked_all", user_id=user_id, count=count, reason=reason)
        return count

    def status(self, session: Session, *, now: Optional[datetime] = None) -> SessionStatusView:
        now = now or utcnow()
        remaining = max(int((session.expires_at - now).total_seconds() // 60), 0)
        return SessionStatusView(
            jti=session.jti,
            status=session.status,
            expires_at=session.expires_at,
            minutes_remaining=remaining,
        )

    def _expire(self, session: Session, now: datetime) -> None:
        if self.store.transition_session(
            session.jti, SessionStatus.ACTIVE, SessionStatus.EXPIRED, at=now, reason="expired"
        ):
            logger.info("session_expired", jti=session.jti)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Pin the algorithm before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("jti"):
            return None
        if verify_exp:
            try:
                exp_ts = float(payload.get("exp"))
            except (TypeError, ValueError):
                return None
            if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
                return None
        return payload
