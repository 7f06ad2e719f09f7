from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
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


class MemoryStore:
    """In-process backing store used by tests and single-node development.

    Every public method takes ``_data_lock`` for its whole body, so the
    multi-row operations (OTP supersession, revoke, ban) are atomic with
    respect to each other. When ``fs_root`` is given the tables are written
    to ``<fs_root>/state/auth_store.json`` after each mutation and reloaded
    on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otp_codes: Dict[str, OtpCode] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.sessions: Dict[str, Session] = {}
        self.revoked_sessions: Dict[str, RevokedSession] = {}
        # RLock so helpers can be called from inside an already locked method
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

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
        with self._data_lock:
            if any(existing.email.lower() == email.lower() for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                is_active=is_active,
                password_hash=password_hash,
                created_at=now or datetime.now(timezone.utc),
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == email.lower()), None
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            user.password_hash = password_hash
            self._persist_state()

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at
                self._persist_state()

    # one-time passcodes
    def replace_otp(self, otp: OtpCode) -> int:
        """Mark every unused code for the pair used, then insert ``otp``.

        Returns the number of superseded codes.
        """
        with self._data_lock:
            superseded = 0
            for existing in self.otp_codes.values():
                if (
                    existing.email == otp.email
                    and existing.purpose == otp.purpose
                    and not existing.is_used
                ):
                    existing.is_used = True
                    superseded += 1
            self.otp_codes[otp.id] = otp
            self._persist_state()
            return superseded

    def find_latest_otp(self, email: str, code: str, purpose: str) -> Optional[OtpCode]:
        with self._data_lock:
            matches = [
                o
                for o in self.otp_codes.values()
                if o.email == email and o.code == code and o.purpose == purpose
            ]
            if not matches:
                return None
            return max(matches, key=lambda o: o.created_at)

    def get_pending_otp(self, email: str, purpose: str, now: datetime) -> Optional[OtpCode]:
        with self._data_lock:
            pending = [
                o
                for o in self.otp_codes.values()
                if o.email == email
                and o.purpose == purpose
                and not o.is_used
                and not o.is_expired(now)
            ]
            if not pending:
                return None
            return max(pending, key=lambda o: o.created_at)

    def consume_otp(self, otp_id: str) -> bool:
        """Mark a code used if it is still unused; False when already consumed."""
        with self._data_lock:
            otp = self.otp_codes.get(otp_id)
            if not otp or otp.is_used:
                return False
            otp.is_used = True
            self._persist_state()
            return True

    def delete_otp(self, otp_id: str) -> None:
        with self._data_lock:
            if self.otp_codes.pop(otp_id, None) is not None:
                self._persist_state()

    def delete_expired_otps(self, now: datetime) -> int:
        with self._data_lock:
            stale = [oid for oid, o in self.otp_codes.items() if o.expires_at < now]
            for oid in stale:
                self.otp_codes.pop(oid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()

    def failed_attempts_since(
        self, ip_address: str, since: datetime
    ) -> Tuple[int, Optional[datetime]]:
        """Return the count of failures for the IP after ``since`` and the oldest one."""
        with self._data_lock:
            stamps = [
                a.created_at
                for a in self.login_attempts
                if a.ip_address == ip_address and not a.success and a.created_at > since
            ]
            return len(stamps), min(stamps) if stamps else None

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if any(s.token_hash == session.token_hash for s in self.sessions.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_active_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.token_hash == token_hash and s.is_active
                ),
                None,
            )

    def touch_session(self, token_hash: str, at: datetime) -> bool:
        with self._data_lock:
            for session in self.sessions.values():
                if session.token_hash == token_hash and session.is_active:
                    if at > session.last_activity_at:
                        session.last_activity_at = at
                        self._persist_state()
                    return True
            return False

    def list_active_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            active = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_active
            ]
            return sorted(active, key=lambda s: s.last_activity_at, reverse=True)

    def list_sessions(
        self, filters: SessionFilters, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[SessionListing], int]:
        with self._data_lock:
            rows: List[SessionListing] = []
            for session in self.sessions.values():
                user = self.users.get(session.user_id)
                if filters.user_id and session.user_id != filters.user_id:
                    continue
                if filters.is_active is not None and session.is_active != filters.is_active:
                    continue
                if filters.ip_address and session.ip_address != filters.ip_address:
                    continue
                if filters.search:
                    needle = filters.search.lower()
                    haystack = " ".join(
                        part.lower()
                        for part in (user.email if user else None, user.name if user else None)
                        if part
                    )
                    if needle not in haystack:
                        continue
                rows.append(
                    SessionListing(
                        session=session,
                        user_email=user.email if user else None,
                        user_name=user.name if user else None,
                    )
                )
            rows.sort(key=lambda r: r.session.last_activity_at, reverse=True)
            return rows[offset : offset + limit], len(rows)

    def session_counts(self, now: datetime) -> SessionStats:
        with self._data_lock:
            stats = SessionStats(total=len(self.sessions))
            for session in self.sessions.values():
                if session.is_active:
                    stats.active += 1
                else:
                    stats.inactive += 1
                if session.expires_at < now:
                    stats.expired += 1
            return stats

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = 0
            for session in self.sessions.values():
                if session.is_active and session.expires_at < now:
                    session.is_active = False
                    expired += 1
            if expired:
                self._persist_state()
            return expired

    # revocation
    def get_revocation_by_token_hash(self, token_hash: str) -> Optional[RevokedSession]:
        with self._data_lock:
            return next(
                (r for r in self.revoked_sessions.values() if r.token_hash == token_hash),
                None,
            )

    def _revocation_for_session(self, session_id: str) -> Optional[RevokedSession]:
        return next(
            (r for r in self.revoked_sessions.values() if r.session_id == session_id),
            None,
        )

    def revoke_session(
        self, session_id: str, revoked_by: Optional[str], reason: str, now: datetime
    ) -> Optional[Tuple[RevokedSession, bool]]:
        """Blacklist and deactivate a session in one critical section.

        Returns ``None`` for an unknown session, otherwise the revocation
        entry and whether it was created by this call.
        """
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            existing = self._revocation_for_session(session_id)
            session.is_active = False
            if existing:
                self._persist_state()
                return existing, False
            entry = RevokedSession.for_session(session, revoked_by, reason, now)
            self.revoked_sessions[entry.id] = entry
            self._persist_state()
            return entry, True

    def revoke_user_sessions_and_ban(
        self, user_id: str, revoked_by: Optional[str], reason: str, now: datetime
    ) -> Optional[List[RevokedSession]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            entries: List[RevokedSession] = []
            for session in self.sessions.values():
                if session.user_id != user_id or not session.is_active:
                    continue
                session.is_active = False
                if self._revocation_for_session(session.id):
                    continue
                entry = RevokedSession.for_session(session, revoked_by, reason, now)
                self.revoked_sessions[entry.id] = entry
                entries.append(entry)
            user.is_active = False
            self._persist_state()
            return entries

    def purge_revocations(self, before: datetime) -> int:
        with self._data_lock:
            stale = [rid for rid, r in self.revoked_sessions.items() if r.revoked_at < before]
            for rid in stale:
                self.revoked_sessions.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # analytics
    def suspicious_users(self, max_sessions: int, max_ips: int) -> List[SuspiciousUser]:
        with self._data_lock:
            grouped: Dict[str, List[Session]] = {}
            for session in self.sessions.values():
                if session.is_active:
                    grouped.setdefault(session.user_id, []).append(session)
            flagged: List[SuspiciousUser] = []
            for user_id, sessions in grouped.items():
                ips = sorted({s.ip_address for s in sessions if s.ip_address})
                if len(sessions) > max_sessions or len(ips) > max_ips:
                    user = self.users.get(user_id)
                    flagged.append(
                        SuspiciousUser(
                            user_id=user_id,
                            email=user.email if user else None,
                            name=user.name if user else None,
                            session_count=len(sessions),
                            ip_count=len(ips),
                            ip_addresses=ips,
                        )
                    )
            flagged.sort(key=lambda s: (s.session_count, s.ip_count), reverse=True)
            return flagged

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls, data: dict):
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and f.name.endswith("_at"):
                value = datetime.fromisoformat(value)
            values[f.name] = value
        return cls(**values)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "otp_codes": [self._serialize(o) for o in self.otp_codes.values()],
            "login_attempts": [self._serialize(a) for a in self.login_attempts],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "revoked_sessions": [
                self._serialize(r) for r in self.revoked_sessions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.otp_codes = {
            o["id"]: self._deserialize(OtpCode, o) for o in data.get("otp_codes", [])
        }
        self.login_attempts = [
            self._deserialize(LoginAttempt, a) for a in data.get("login_attempts", [])
        ]
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.revoked_sessions = {
            r["id"]: self._deserialize(RevokedSession, r)
            for r in data.get("revoked_sessions", [])
        }
        self.logger.info("memory_store_state_loaded", path=str(path), users=len(self.users))
        return True
