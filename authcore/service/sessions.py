from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from authcore.clock import Clock, SystemClock
from authcore.logging import get_logger
from authcore.service.suspicious import SuspiciousSessionDetector
from authcore.storage.models import (
    Session,
    SessionFilters,
    SessionListing,
    SessionPage,
    SessionStats,
)

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


def hash_token(token: str) -> str:
    """SHA-256 hex digest; the only form in which a session token is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    return secrets.token_urlsafe(32)


class SessionRecordStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_active_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def touch_session(self, token_hash: str, at: datetime) -> bool: ...

    def list_active_sessions_for_user(self, user_id: str) -> List[Session]: ...

    def list_sessions(
        self, filters: SessionFilters, *, offset: int = 0, limit: int = 20
    ) -> Tuple[List[SessionListing], int]: ...

    def session_counts(self, now: datetime) -> SessionStats: ...

    def expire_sessions(self, now: datetime) -> int: ...

    def purge_revocations(self, before: datetime) -> int: ...


class SessionService:
    """Lifecycle of login sessions keyed by token hash."""

    def __init__(
        self,
        store: SessionRecordStore,
        *,
        session_ttl_minutes: int = 30 * 24 * 60,
        revoked_retention_days: int = 30,
        detector: Optional[SuspiciousSessionDetector] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.session_ttl = timedelta(minutes=session_ttl_minutes)
        self.revoked_retention = timedelta(days=revoked_retention_days)
        self.detector = detector
        self.clock = clock or SystemClock()
        self.logger = logger

    def create(
        self,
        user_id: str,
        token_hash: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[str] = None,
        location: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Session:
        now = self.clock.now()
        session = Session.new(
            user_id,
            token_hash,
            now,
            expires_at or now + self.session_ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            location=location,
        )
        self.store.insert_session(session)
        self.logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            ip_address=ip_address,
        )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def get_by_token_hash(self, token_hash: str) -> Optional[Session]:
        return self.store.get_active_session_by_token_hash(token_hash)

    def get_by_token(self, token: str) -> Optional[Session]:
        return self.get_by_token_hash(hash_token(token))

    def touch(self, token_hash: str) -> None:
        """Advance ``last_activity_at``; never moves it backwards and never raises."""
        try:
            self.store.touch_session(token_hash, self.clock.now())
        except Exception as exc:
            self.logger.warning("session_touch_failed", error=str(exc))

    def list_by_user(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions_for_user(user_id)

    def list_sessions(
        self,
        filters: Optional[SessionFilters] = None,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> SessionPage:
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        items, total = self.store.list_sessions(
            filters or SessionFilters(), offset=(page - 1) * limit, limit=limit
        )
        return SessionPage(items=items, total=total, page=page, limit=limit)

    def stats(self) -> SessionStats:
        stats = self.store.session_counts(self.clock.now())
        if self.detector is not None:
            stats.suspicious = self.detector.count()
        return stats

    def cleanup_expired(self) -> int:
        """Deactivate expired sessions and drop revocations past retention.

        Returns the number of sessions deactivated. Safe to run concurrently.
        """
        now = self.clock.now()
        expired = self.store.expire_sessions(now)
        purged = self.store.purge_revocations(now - self.revoked_retention)
        self.logger.info("session_cleanup", expired=expired, revocations_purged=purged)
        return expired
