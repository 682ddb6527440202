from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

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
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        national_id BIGINT NOT NULL UNIQUE,
        check_digit CHAR(1) NOT NULL,
        state TEXT NOT NULL DEFAULT 'ACTIVE',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB,
        state_changed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device (
        fingerprint VARCHAR(255) PRIMARY KEY,
        user_id UUID REFERENCES app_user(id),
        authorized BOOLEAN NOT NULL DEFAULT FALSE,
        type TEXT,
        os TEXT,
        browser TEXT,
        registered_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS device_user_idx ON device (user_id)",
    """
    CREATE TABLE IF NOT EXISTS device_log (
        id UUID PRIMARY KEY,
        action TEXT NOT NULL,
        user_id UUID,
        fingerprint VARCHAR(255) NOT NULL,
        type TEXT,
        os TEXT,
        browser TEXT,
        details TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        jti UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        device_fingerprint VARCHAR(255),
        status TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        closed_at TIMESTAMPTZ,
        close_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, status)",
    """
    CREATE TABLE IF NOT EXISTS auth_attempt (
        id UUID PRIMARY KEY,
        user_id UUID REFERENCES app_user(id),
        device_fingerprint VARCHAR(255) NOT NULL DEFAULT '',
        session_jti UUID,
        success BOOLEAN NOT NULL,
        reason TEXT NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_attempt_user_idx ON auth_attempt (user_id, occurred_at)",
    """
    CREATE TABLE IF NOT EXISTS recovery (
        id UUID PRIMARY KEY,
        kind TEXT NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user(id),
        code VARCHAR(6) NOT NULL,
        fingerprint VARCHAR(255),
        status TEXT NOT NULL,
        requested_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS recovery_user_idx ON recovery (user_id, kind, status)",
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store using psycopg 3 with a connection pool.

    Check-then-act operations run inside a single transaction, either as a
    conditional ``UPDATE ... RETURNING`` or behind ``SELECT ... FOR UPDATE``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise StoreUnavailable(str(exc), operation="connect") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except json.JSONDecodeError:
                meta = None
        return User(
            id=str(row["id"]),
            email=row["email"],
            national_id=int(row["national_id"]),
            check_digit=row["check_digit"],
            state=AccountState(row.get("state") or AccountState.ACTIVE.value),
            email_verified=bool(row.get("email_verified")),
            created_at=row["created_at"],
            meta=meta,
            state_changed_at=row.get("state_changed_at"),
        )

    @staticmethod
    def _row_to_device(row: Dict[str, Any]) -> Device:
        return Device(
            fingerprint=row["fingerprint"],
            user_id=_str_or_none(row.get("user_id")),
            authorized=bool(row.get("authorized")),
            type=row.get("type"),
            os=row.get("os"),
            browser=row.get("browser"),
            registered_at=row["registered_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            jti=str(row["jti"]),
            user_id=str(row["user_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            device_fingerprint=row.get("device_fingerprint"),
            status=SessionStatus(row["status"]),
            closed_at=row.get("closed_at"),
            close_reason=row.get("close_reason"),
        )

    @staticmethod
    def _row_to_attempt(row: Dict[str, Any]) -> AuthAttempt:
        return AuthAttempt(
            id=str(row["id"]),
            user_id=_str_or_none(row.get("user_id")),
            device_fingerprint=row.get("device_fingerprint") or "",
            session_jti=_str_or_none(row.get("session_jti")),
            success=bool(row["success"]),
            reason=AttemptReason(row["reason"]),
            occurred_at=row["occurred_at"],
        )

    @staticmethod
    def _row_to_recovery(row: Dict[str, Any]) -> RecoveryRecord:
        return RecoveryRecord(
            id=str(row["id"]),
            kind=RecoveryKind(row["kind"]),
            user_id=str(row["user_id"]),
            code=row["code"],
            requested_at=row["requested_at"],
            expires_at=row["expires_at"],
            fingerprint=row.get("fingerprint"),
            status=RecoveryStatus(row["status"]),
            consumed_at=row.get("consumed_at"),
        )

    @staticmethod
    def _row_to_log(row: Dict[str, Any]) -> DeviceLogEntry:
        return DeviceLogEntry(
            id=str(row["id"]),
            action=DeviceAction(row["action"]),
            user_id=_str_or_none(row.get("user_id")),
            fingerprint=row["fingerprint"],
            type=row.get("type"),
            os=row.get("os"),
            browser=row.get("browser"),
            details=row.get("details"),
            created_at=row["created_at"],
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, national_id, check_digit, email_verified, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        national_id,
                        check_digit.upper(),
                        email_verified,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "national_id" if "national_id" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_national_id(self, national_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE national_id = %s", (national_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_account_state(self, user_id: str, state: AccountState) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET state = %s, state_changed_at = now() WHERE id = %s RETURNING *",
                (state.value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # -- devices -----------------------------------------------------------

    def get_device(self, fingerprint: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device WHERE fingerprint = %s", (fingerprint,)
            ).fetchone()
        return self._row_to_device(row) if row else None

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
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO device (fingerprint, registered_at)
                    VALUES (%s, now())
                    ON CONFLICT (fingerprint) DO NOTHING
                    """,
                    (fingerprint,),
                )
                current = conn.execute(
                    "SELECT * FROM device WHERE fingerprint = %s FOR UPDATE",
                    (fingerprint,),
                ).fetchone()
                owner = _str_or_none(current.get("user_id"))
                if owner and owner != user_id:
                    raise ConstraintViolation(
                        "device bound to another user", {"fingerprint": fingerprint}
                    )
                row = conn.execute(
                    """
                    UPDATE device
                    SET user_id = %s,
                        authorized = %s,
                        type = COALESCE(%s, type),
                        os = COALESCE(%s, os),
                        browser = COALESCE(%s, browser)
                    WHERE fingerprint = %s
                    RETURNING *
                    """,
                    (user_id, authorized, type, os, browser, fingerprint),
                ).fetchone()
        return self._row_to_device(row), owner is None

    def set_device_authorized(self, fingerprint: str, authorized: bool) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE device SET authorized = %s WHERE fingerprint = %s RETURNING *",
                (authorized, fingerprint),
            ).fetchone()
        return self._row_to_device(row) if row else None

    def detach_device(self, fingerprint: str) -> List[Device]:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    """
                    SELECT * FROM device
                    WHERE fingerprint = %s AND user_id IS NOT NULL
                    FOR UPDATE
                    """,
                    (fingerprint,),
                ).fetchall()
                conn.execute(
                    "UPDATE device SET user_id = NULL, authorized = FALSE WHERE fingerprint = %s",
                    (fingerprint,),
                )
        return [self._row_to_device(row) for row in rows]

    def list_devices_for_user(self, user_id: str) -> List[Device]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM device WHERE user_id = %s ORDER BY registered_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_device(row) for row in rows]

    def touch_device_login(self, fingerprint: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE device SET last_login_at = %s WHERE fingerprint = %s",
                (at, fingerprint),
            )

    def append_device_log(self, entry: DeviceLogEntry) -> DeviceLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO device_log (id, action, user_id, fingerprint, type, os, browser, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action.value,
                    entry.user_id,
                    entry.fingerprint,
                    entry.type,
                    entry.os,
                    entry.browser,
                    entry.details,
                    entry.created_at,
                ),
            )
        return entry

    def list_device_log(
        self, *, user_id: Optional[str] = None, fingerprint: Optional[str] = None
    ) -> List[DeviceLogEntry]:
        clauses = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if fingerprint is not None:
            clauses.append("fingerprint = %s")
            params.append(fingerprint)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM device_log {where} ORDER BY created_at", params
            ).fetchall()
        return [self._row_to_log(row) for row in rows]

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (jti, user_id, device_fingerprint, status, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.jti,
                        session.user_id,
                        session.device_fingerprint,
                        session.status.value,
                        session.issued_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("duplicate session id", {"jti": session.jti})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": session.user_id})
        return session

    def get_session(self, jti: str) -> Optional[Session]:
        try:
            uuid.UUID(jti)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE jti = %s", (jti,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def transition_session(
        self,
        jti: str,
        from_status: SessionStatus,
        to_status: SessionStatus,
        *,
        at: datetime,
        reason: Optional[str] = None,
    ) -> Optional[Session]:
        try:
            uuid.UUID(jti)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET status = %s, closed_at = %s, close_reason = %s
                WHERE jti = %s AND status = %s
                RETURNING *
                """,
                (to_status.value, at, reason, jti, from_status.value),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions_for_user(
        self, user_id: str, status: Optional[SessionStatus] = None
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = %s"
            params.append(status.value)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY issued_at", params).fetchall()
        return [self._row_to_session(row) for row in rows]

    # -- attempts ----------------------------------------------------------

    def append_attempt(self, attempt: AuthAttempt) -> AuthAttempt:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_attempt (id, user_id, device_fingerprint, session_jti, success, reason, occurred_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                RETURNING *
                """,
                (
                    attempt.id,
                    attempt.user_id,
                    attempt.device_fingerprint,
                    attempt.session_jti,
                    attempt.success,
                    attempt.reason.value,
                    attempt.occurred_at,
                ),
            ).fetchone()
            if row is None:
                # Row already written by an earlier try of the same attempt
                row = conn.execute(
                    "SELECT * FROM auth_attempt WHERE id = %s", (attempt.id,)
                ).fetchone()
        return self._row_to_attempt(row)

    def list_attempts(
        self,
        *,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuthAttempt]:
        clauses = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if since is not None:
            clauses.append("occurred_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_attempt {where} ORDER BY occurred_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    def count_attempts_since(
        self, user_id: str, since: datetime, reason: AttemptReason
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS c FROM auth_attempt
                WHERE user_id = %s AND reason = %s AND occurred_at > %s
                """,
                (user_id, reason.value, since),
            ).fetchone()
        return int(row["c"]) if row else 0

    def last_success_at(self, user_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(occurred_at) AS last FROM auth_attempt WHERE user_id = %s AND success",
                (user_id,),
            ).fetchone()
        return row["last"] if row else None

    # -- recovery ----------------------------------------------------------

    def create_recovery(self, record: RecoveryRecord) -> RecoveryRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO recovery (id, kind, user_id, code, fingerprint, status, requested_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.kind.value,
                        record.user_id,
                        record.code,
                        record.fingerprint,
                        record.status.value,
                        record.requested_at,
                        record.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("duplicate recovery id", {"id": record.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": record.user_id})
        return record

    def get_recovery(self, recovery_id: str) -> Optional[RecoveryRecord]:
        try:
            uuid.UUID(recovery_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM recovery WHERE id = %s", (recovery_id,)
            ).fetchone()
        return self._row_to_recovery(row) if row else None

    def supersede_pending_recoveries(self, user_id: str, kind: RecoveryKind) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE recovery SET status = %s
                WHERE user_id = %s AND kind = %s AND status = %s
                """,
                (
                    RecoveryStatus.SUPERSEDED.value,
                    user_id,
                    kind.value,
                    RecoveryStatus.PENDING.value,
                ),
            )
            return cur.rowcount or 0

    def transition_recovery(
        self,
        recovery_id: str,
        from_status: RecoveryStatus,
        to_status: RecoveryStatus,
        *,
        at: datetime,
    ) -> Optional[RecoveryRecord]:
        consumed_at = at if to_status == RecoveryStatus.CONSUMED else None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE recovery
                SET status = %s, consumed_at = COALESCE(%s, consumed_at)
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (to_status.value, consumed_at, recovery_id, from_status.value),
            ).fetchone()
        return self._row_to_recovery(row) if row else None
