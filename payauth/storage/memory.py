from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from payauth.logging import get_logger
from payauth.storage.errors import ConstraintViolation, StoreUnavailable
from payauth.storage.models import (
    AccountState,
    AttemptReason,
    AuthAttempt,
    Device,
    DeviceAction,
    DeviceLogEntry,
    RecoveryKind,
    RecoveryRecord,
    RecoveryStatus,
    Session,
    SessionStatus,
    User,
    utcnow,
)


class MemoryStore:
    """Thread-safe in-memory store with an optional JSON snapshot on disk.

    Every compound check-then-act operation (device binding, session and
    recovery status transitions) runs under a single ``RLock`` so that
    concurrent request workers observe it as atomic.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.devices: Dict[str, Device] = {}
        self.device_log: List[DeviceLogEntry] = []
        self.sessions: Dict[str, Session] = {}
        self.attempts: Dict[str, AuthAttempt] = {}
        self.recoveries: Dict[str, RecoveryRecord] = {}
        # RLock so nested helpers can re-enter while holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def ping(self) -> bool:
        return True

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        national_id: int,
        check_digit: str,
        *,
        email_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        email = email.strip().lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.national_id == national_id:
                    raise ConstraintViolation(
                        "national id already exists", {"field": "national_id"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                national_id=national_id,
                check_digit=check_digit.upper(),
                email_verified=email_verified,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    def get_user_by_national_id(self, national_id: int) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.national_id == national_id:
                    return replace(user)
        return None

    def set_account_state(self, user_id: str, state: AccountState) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.state = state
            user.state_changed_at = utcnow()
            self._persist_state()
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            self._persist_state()
            return replace(user)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- devices -----------------------------------------------------------

    def get_device(self, fingerprint: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(fingerprint)
            return replace(device) if device else None

    def bind_device(
        self,
        fingerprint: str,
        user_id: str,
        *,
        authorized: bool,
        type: Optional[str] = None,
        os: Optional[str] = None,
        browser: Optional[str] = None,
    ) -> Tuple[Device, bool]:
        """Bind ``fingerprint`` to ``user_id``; returns ``(device, newly_linked)``."""
        with self._data_lock:
            device = self.devices.get(fingerprint)
            if device and device.user_id and device.user_id != user_id:
                raise ConstraintViolation(
                    "device bound to another user", {"fingerprint": fingerprint}
                )
            newly_linked = device is None or device.user_id is None
            if device is None:
                device = Device(fingerprint=fingerprint)
                self.devices[fingerprint] = device
            device.user_id = user_id
            device.authorized = authorized
            device.type = type or device.type
            device.os = os or device.os
            device.browser = browser or device.browser
            self._persist_state()
            return replace(device), newly_linked

    def set_device_authorized(self, fingerprint: str, authorized: bool) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(fingerprint)
            if not device:
                return None
            device.authorized = authorized
            self._persist_state()
            return replace(device)

    def detach_device(self, fingerprint: str) -> List[Device]:
        """Clear the owner of every device with ``fingerprint``; returns the prior state."""
        with self._data_lock:
            device = self.devices.get(fingerprint)
            if not device or device.user_id is None:
                return []
            before = replace(device)
            device.user_id = None
            device.authorized = False
            self._persist_state()
            return [before]

    def list_devices_for_user(self, user_id: str) -> List[Device]:
        with self._data_lock:
            return [replace(d) for d in self.devices.values() if d.user_id == user_id]

    def touch_device_login(self, fingerprint: str, at: datetime) -> None:
        with self._data_lock:
            device = self.devices.get(fingerprint)
            if device:
                device.last_login_at = at
                self._persist_state()

    def append_device_log(self, entry: DeviceLogEntry) -> DeviceLogEntry:
        with self._data_lock:
            self.device_log.append(entry)
            self._persist_state()
            return entry

    def list_device_log(
        self, *, user_id: Optional[str] = None, fingerprint: Optional[str] = None
    ) -> List[DeviceLogEntry]:
        with self._data_lock:
            return [
                e
                for e in self.device_log
                if (user_id is None or e.user_id == user_id)
                and (fingerprint is None or e.fingerprint == fingerprint)
            ]

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.jti in self.sessions:
                raise ConstraintViolation("duplicate session id", {"jti": session.jti})
            self.sessions[session.jti] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, jti: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(jti)
            return replace(session) if session else None

    def transition_session(
        self,
        jti: str,
        from_status: SessionStatus,
        to_status: SessionStatus,
        *,
        at: datetime,
        reason: Optional[str] = None,
    ) -> Optional[Session]:
        """Compare-and-set on session status; ``None`` when the session is not in ``from_status``."""
        with self._data_lock:
            session = self.sessions.get(jti)
            if not session or session.status != from_status:
                return None
            session.status = to_status
            session.closed_at = at
            session.close_reason = reason
            self._persist_state()
            return replace(session)

    def list_sessions_for_user(
        self, user_id: str, status: Optional[SessionStatus] = None
    ) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (status is None or s.status == status)
            ]

    # -- attempts ----------------------------------------------------------

    def append_attempt(self, attempt: AuthAttempt) -> AuthAttempt:
        with self._data_lock:
            existing = self.attempts.get(attempt.id)
            if existing:
                return existing
            self.attempts[attempt.id] = attempt
            self._persist_state()
            return attempt

    def list_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuthAttempt]:
        with self._data_lock:
            rows = [
                a
                for a in self.attempts.values()
                if (user_id is None or a.user_id == user_id)
                and (since is None or a.occurred_at >= since)
            ]
        rows.sort(key=lambda a: a.occurred_at, reverse=True)
        return rows[:limit]

    def count_attempts_since(
        self, user_id: str, since: datetime, reason: AttemptReason
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.attempts.values()
                if a.user_id == user_id and a.reason == reason and a.occurred_at > since
            )

    def last_success_at(self, user_id: str) -> Optional[datetime]:
        with self._data_lock:
            times = [
                a.occurred_at
                for a in self.attempts.values()
                if a.user_id == user_id and a.success
            ]
        return max(times) if times else None

    # -- recovery ----------------------------------------------------------

    def create_recovery(self, record: RecoveryRecord) -> RecoveryRecord:
        with self._data_lock:
            if record.id in self.recoveries:
                raise ConstraintViolation("duplicate recovery id", {"id": record.id})
            self.recoveries[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def get_recovery(self, recovery_id: str) -> Optional[RecoveryRecord]:
        with self._data_lock:
            record = self.recoveries.get(recovery_id)
            return replace(record) if record else None

    def supersede_pending_recoveries(self, user_id: str, kind: RecoveryKind) -> int:
        with self._data_lock:
            count = 0
            for record in self.recoveries.values():
                if (
                    record.user_id == user_id
                    and record.kind == kind
                    and record.status == RecoveryStatus.PENDING
                ):
                    record.status = RecoveryStatus.SUPERSEDED
                    count += 1
            if count:
                self._persist_state()
            return count

    def transition_recovery(
        self,
        recovery_id: str,
        from_status: RecoveryStatus,
        to_status: RecoveryStatus,
        *,
        at: datetime,
    ) -> Optional[RecoveryRecord]:
        """Compare-and-set on recovery status; ``None`` when the record is not in ``from_status``."""
        with self._data_lock:
            record = self.recoveries.get(recovery_id)
            if not record or record.status != from_status:
                return None
            record.status = to_status
            if to_status == RecoveryStatus.CONSUMED:
                record.consumed_at = at
            self._persist_state()
            return replace(record)

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [
                {
                    "id": u.id,
                    "email": u.email,
                    "national_id": u.national_id,
                    "check_digit": u.check_digit,
                    "state": u.state.value,
                    "email_verified": u.email_verified,
                    "created_at": self._dt(u.created_at),
                    "meta": u.meta,
                    "state_changed_at": self._dt(u.state_changed_at),
                }
                for u in self.users.values()
            ],
            "credentials": [
                {"user_id": uid, "password_hash": h, "password_algo": algo}
                for uid, (h, algo) in self.credentials.items()
            ],
            "devices": [
                {
                    "fingerprint": d.fingerprint,
                    "user_id": d.user_id,
                    "authorized": d.authorized,
                    "type": d.type,
                    "os": d.os,
                    "browser": d.browser,
                    "registered_at": self._dt(d.registered_at),
                    "last_login_at": self._dt(d.last_login_at),
                }
                for d in self.devices.values()
            ],
            "device_log": [
                {
                    "id": e.id,
                    "action": e.action.value,
                    "user_id": e.user_id,
                    "fingerprint": e.fingerprint,
                    "type": e.type,
                    "os": e.os,
                    "browser": e.browser,
                    "details": e.details,
                    "created_at": self._dt(e.created_at),
                }
                for e in self.device_log
            ],
            "sessions": [
                {
                    "jti": s.jti,
                    "user_id": s.user_id,
                    "issued_at": self._dt(s.issued_at),
                    "expires_at": self._dt(s.expires_at),
                    "device_fingerprint": s.device_fingerprint,
                    "status": s.status.value,
                    "closed_at": self._dt(s.closed_at),
                    "close_reason": s.close_reason,
                }
                for s in self.sessions.values()
            ],
            "attempts": [
                {
                    "id": a.id,
                    "user_id": a.user_id,
                    "device_fingerprint": a.device_fingerprint,
                    "session_jti": a.session_jti,
                    "success": a.success,
                    "reason": a.reason.value,
                    "occurred_at": self._dt(a.occurred_at),
                }
                for a in self.attempts.values()
            ],
            "recoveries": [
                {
                    "id": r.id,
                    "kind": r.kind.value,
                    "user_id": r.user_id,
                    "code": r.code,
                    "requested_at": self._dt(r.requested_at),
                    "expires_at": self._dt(r.expires_at),
                    "fingerprint": r.fingerprint,
                    "status": r.status.value,
                    "consumed_at": self._dt(r.consumed_at),
                }
                for r in self.recoveries.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable(
                f"failed to persist in-memory state: {exc}", operation="persist"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(
                id=u["id"],
                email=u["email"],
                national_id=int(u["national_id"]),
                check_digit=u["check_digit"],
                state=AccountState(u.get("state", AccountState.ACTIVE.value)),
                email_verified=u.get("email_verified", False),
                created_at=self._parse_dt(u.get("created_at")) or utcnow(),
                meta=u.get("meta"),
                state_changed_at=self._parse_dt(u.get("state_changed_at")),
            )
            for u in data.get("users", [])
        }
        self.credentials = {
            c["user_id"]: (c["password_hash"], c.get("password_algo", ""))
            for c in data.get("credentials", [])
        }
        self.devices = {
            d["fingerprint"]: Device(
                fingerprint=d["fingerprint"],
                user_id=d.get("user_id"),
                authorized=d.get("authorized", False),
                type=d.get("type"),
                os=d.get("os"),
                browser=d.get("browser"),
                registered_at=self._parse_dt(d.get("registered_at")) or utcnow(),
                last_login_at=self._parse_dt(d.get("last_login_at")),
            )
            for d in data.get("devices", [])
        }
        self.device_log = [
            DeviceLogEntry(
                id=e["id"],
                action=DeviceAction(e["action"]),
                user_id=e.get("user_id"),
                fingerprint=e["fingerprint"],
                type=e.get("type"),
                os=e.get("os"),
                browser=e.get("browser"),
                details=e.get("details"),
                created_at=self._parse_dt(e.get("created_at")) or utcnow(),
            )
            for e in data.get("device_log", [])
        ]
        self.sessions = {
            s["jti"]: Session(
                jti=s["jti"],
                user_id=s["user_id"],
                issued_at=self._parse_dt(s["issued_at"]),
                expires_at=self._parse_dt(s["expires_at"]),
                device_fingerprint=s.get("device_fingerprint"),
                status=SessionStatus(s["status"]),
                closed_at=self._parse_dt(s.get("closed_at")),
                close_reason=s.get("close_reason"),
            )
            for s in data.get("sessions", [])
        }
        self.attempts = {
            a["id"]: AuthAttempt(
                id=a["id"],
                user_id=a.get("user_id"),
                device_fingerprint=a.get("device_fingerprint", ""),
                session_jti=a.get("session_jti"),
                success=a["success"],
                reason=AttemptReason(a["reason"]),
                occurred_at=self._parse_dt(a["occurred_at"]),
            )
            for a in data.get("attempts", [])
        }
        self.recoveries = {
            r["id"]: RecoveryRecord(
                id=r["id"],
                kind=RecoveryKind(r["kind"]),
                user_id=r["user_id"],
                code=r["code"],
                requested_at=self._parse_dt(r["requested_at"]),
                expires_at=self._parse_dt(r["expires_at"]),
                fingerprint=r.get("fingerprint"),
                status=RecoveryStatus(r["status"]),
                consumed_at=self._parse_dt(r.get("consumed_at")),
            )
            for r in data.get("recoveries", [])
        }
        return True
