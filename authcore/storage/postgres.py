from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    LoginAttempt,
    OtpCode,
    RevokedSession,
    Session,
    SessionFilters,
    SessionListing,
    SessionStats,
    SuspiciousUser,
    User,
)

_REQUIRED_TABLES = (
    "users",
    "otp_codes",
    "login_attempts",
    "sessions",
    "revoked_sessions",
)


class PostgresStore:
    """Postgres-backed store for users, codes, attempts, sessions and revocations."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            raise StoreUnavailable("connection pool exhausted", operation="checkout") from exc
        except psycopg.OperationalError as exc:
            raise StoreUnavailable(str(exc) or "database unavailable") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mappers
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            password_hash=row.get("password_hash"),
            created_at=row.get("created_at"),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OtpCode:
        return OtpCode(
            id=str(row["id"]),
            email=row["email"],
            code=row["code"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            is_used=row.get("is_used", False),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            login_at=row["login_at"],
            last_activity_at=row["last_activity_at"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_info=row.get("device_info"),
            location=row.get("location"),
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _revocation_from_row(row: dict) -> RevokedSession:
        revoked_by = row.get("revoked_by")
        return RevokedSession(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            reason=row["reason"],
            revoked_at=row["revoked_at"],
            revoked_by=str(revoked_by) if revoked_by is not None else None,
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        name: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
        now: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, name, role, is_active, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (user_id, email, name, role, is_active, password_hash, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    # one-time passcodes
    def replace_otp(self, otp: OtpCode) -> int:
        """Invalidate pending codes for the pair and insert ``otp`` in one transaction.

        The partial unique index on pending codes turns a concurrent issuance
        into a ``UniqueViolation``; the loser retries once so it supersedes
        the winner's code instead of failing.
        """
        for attempt in range(2):
            try:
                with self._connect() as conn, conn.transaction():
                    cur = conn.execute(
                        """
                        UPDATE otp_codes SET is_used = TRUE
                        WHERE email = %s AND purpose = %s AND NOT is_used
                        """,
                        (otp.email, otp.purpose),
                    )
                    superseded = cur.rowcount
                    conn.execute(
                        """
                        INSERT INTO otp_codes (id, email, code, purpose, expires_at, is_used, created_at)
                        VALUES (%s, %s, %s, %s, %s, FALSE, %s)
                        """,
                        (
                            otp.id,
                            otp.email,
                            otp.code,
                            otp.purpose,
                            otp.expires_at,
                            otp.created_at,
                        ),
                    )
                return superseded
            except errors.UniqueViolation:
                if attempt:
                    raise ConstraintViolation(
                        "pending code already exists", {"email": otp.email, "purpose": otp.purpose}
                    )
                self.logger.info("otp_issue_conflict_retry", purpose=otp.purpose)
        return 0

    def find_latest_otp(self, email: str, code: str, purpose: str) -> Optional[OtpCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_codes
                WHERE email = %s AND code = %s AND purpose = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (email, code, purpose),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def get_pending_otp(self, email: str, purpose: str, now: datetime) -> Optional[OtpCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_codes
                WHERE email = %s AND purpose = %s AND NOT is_used AND expires_at >= %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (email, purpose, now),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def consume_otp(self, otp_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE otp_codes SET is_used = TRUE WHERE id = %s AND NOT is_used",
                (otp_id,),
            )
            return cur.rowcount == 1

    def delete_otp(self, otp_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM otp_codes WHERE id = %s", (otp_id,))

    def delete_expired_otps(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_codes WHERE expires_at < %s", (now,))
            return cur.rowcount

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempts (id, email, ip_address, user_agent, success, failure_reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.email,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.success,
                    attempt.failure_reason,
                    attempt.created_at,
                ),
            )

    def failed_attempts_since(
        self, ip_address: str, since: datetime
    ) -> Tuple[int, Optional[datetime]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count, MIN(created_at) AS oldest
                FROM login_attempts
                WHERE ip_address = %s AND NOT success AND created_at > %s
                """,
                (ip_address, since),
            ).fetchone()
        if not row:
            return 0, None
        return int(row["count"]), row.get("oldest")

    # sessions
    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, token_hash, ip_address, user_agent, device_info,
                                          location, login_at, last_activity_at, expires_at, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.ip_address,
                        session.user_agent,
                        session.device_info,
                        session.location,
                        session.login_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.is_active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_active_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE token_hash = %s AND is_active",
                (token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, token_hash: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sessions SET last_activity_at = GREATEST(last_activity_at, %s)
                WHERE token_hash = %s AND is_active
                """,
                (at, token_hash),
            )
            return cur.rowcount > 0

    def list_active_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE user_id = %s AND is_active
                ORDER BY last_activity_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_sessions(
        self, filters: SessionFilters, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[SessionListing], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.user_id:
            clauses.append("s.user_id = %s")
            params.append(filters.user_id)
        if filters.is_active is not None:
            clauses.append("s.is_active = %s")
            params.append(filters.is_active)
        if filters.ip_address:
            clauses.append("s.ip_address = %s")
            params.append(filters.ip_address)
        if filters.search:
            clauses.append("(u.email ILIKE %s OR u.name ILIKE %s)")
            pattern = f"%{filters.search}%"
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            count_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM sessions s LEFT JOIN users u ON u.id = s.user_id {where}",
                params,
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT s.*, u.email AS user_email, u.name AS user_name
                FROM sessions s LEFT JOIN users u ON u.id = s.user_id
                {where}
                ORDER BY s.last_activity_at DESC
                LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            ).fetchall()
        items = [
            SessionListing(
                session=self._session_from_row(row),
                user_email=row.get("user_email"),
                user_name=row.get("user_name"),
            )
            for row in rows
        ]
        return items, int(count_row["total"]) if count_row else 0

    def session_counts(self, now: datetime) -> SessionStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE is_active) AS active,
                       COUNT(*) FILTER (WHERE NOT is_active) AS inactive,
                       COUNT(*) FILTER (WHERE expires_at < %s) AS expired
                FROM sessions
                """,
                (now,),
            ).fetchone()
        if not row:
            return SessionStats()
        return SessionStats(
            total=int(row["total"]),
            active=int(row["active"]),
            inactive=int(row["inactive"]),
            expired=int(row["expired"]),
        )

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sessions SET is_active = FALSE WHERE is_active AND expires_at < %s",
                (now,),
            )
            return cur.rowcount

    # revocation
    def get_revocation_by_token_hash(self, token_hash: str) -> Optional[RevokedSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM revoked_sessions WHERE token_hash = %s ORDER BY revoked_at LIMIT 1",
                (token_hash,),
            ).fetchone()
        return self._revocation_from_row(row) if row else None

    def revoke_session(
        self, session_id: str, revoked_by: Optional[str], reason: str, now: datetime
    ) -> Optional[Tuple[RevokedSession, bool]]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s FOR UPDATE", (session_id,)
            ).fetchone()
            if not row:
                return None
            session = self._session_from_row(row)
            conn.execute(
                "UPDATE sessions SET is_active = FALSE WHERE id = %s", (session_id,)
            )
            entry = RevokedSession.for_session(session, revoked_by, reason, now)
            inserted = conn.execute(
                """
                INSERT INTO revoked_sessions (id, session_id, token_hash, user_id, revoked_by, reason, revoked_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (session_id) DO NOTHING
                RETURNING *
                """,
                (
                    entry.id,
                    entry.session_id,
                    entry.token_hash,
                    entry.user_id,
                    entry.revoked_by,
                    entry.reason,
                    entry.revoked_at,
                ),
            ).fetchone()
            if inserted:
                return self._revocation_from_row(inserted), True
            existing = conn.execute(
                "SELECT * FROM revoked_sessions WHERE session_id = %s", (session_id,)
            ).fetchone()
            return self._revocation_from_row(existing), False

    def revoke_user_sessions_and_ban(
        self, user_id: str, revoked_by: Optional[str], reason: str, now: datetime
    ) -> Optional[List[RevokedSession]]:
        with self._connect() as conn, conn.transaction():
            user_row = conn.execute(
                "SELECT id FROM users WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not user_row:
                return None
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = %s AND is_active FOR UPDATE",
                (user_id,),
            ).fetchall()
            entries: List[RevokedSession] = []
            for row in rows:
                entry = RevokedSession.for_session(
                    self._session_from_row(row), revoked_by, reason, now
                )
                inserted = conn.execute(
                    """
                    INSERT INTO revoked_sessions (id, session_id, token_hash, user_id, revoked_by, reason, revoked_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (session_id) DO NOTHING
                    RETURNING *
                    """,
                    (
                        entry.id,
                        entry.session_id,
                        entry.token_hash,
                        entry.user_id,
                        entry.revoked_by,
                        entry.reason,
                        entry.revoked_at,
                    ),
                ).fetchone()
                if inserted:
                    entries.append(self._revocation_from_row(inserted))
            conn.execute(
                "UPDATE sessions SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            conn.execute("UPDATE users SET is_active = FALSE WHERE id = %s", (user_id,))
        return entries

    def purge_revocations(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM revoked_sessions WHERE revoked_at < %s", (before,)
            )
            return cur.rowcount

    # analytics
    def suspicious_users(self, max_sessions: int, max_ips: int) -> List[SuspiciousUser]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.user_id, u.email, u.name,
                       COUNT(*) AS session_count,
                       COUNT(DISTINCT s.ip_address) AS ip_count,
                       array_remove(array_agg(DISTINCT s.ip_address), NULL) AS ip_addresses
                FROM sessions s
                LEFT JOIN users u ON u.id = s.user_id
                WHERE s.is_active
                GROUP BY s.user_id, u.email, u.name
                HAVING COUNT(*) > %s OR COUNT(DISTINCT s.ip_address) > %s
                ORDER BY session_count DESC, ip_count DESC
                """,
                (max_sessions, max_ips),
            ).fetchall()
        return [
            SuspiciousUser(
                user_id=str(row["user_id"]),
                email=row.get("email"),
                name=row.get("name"),
                session_count=int(row["session_count"]),
                ip_count=int(row["ip_count"]),
                ip_addresses=sorted(row.get("ip_addresses") or []),
            )
            for row in rows
        ]
