from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from authcore.clock import Clock, SystemClock
from authcore.logging import get_logger
from authcore.service.errors import NotFoundError, SessionNotFoundError
from authcore.storage.models import RevokedSession, Session

logger = get_logger(__name__)

DEFAULT_KICK_REASON = "Kicked by admin"
DEFAULT_BAN_REASON = "User banned by admin"


class RevocationStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_revocation_by_token_hash(self, token_hash: str) -> Optional[RevokedSession]: ...

    def revoke_session(
        self, session_id: str, revoked_by: Optional[str], reason: str, now: datetime
    ) -> Optional[Tuple[RevokedSession, bool]]: ...

    def revoke_user_sessions_and_ban(
        self, user_id: str, revoked_by: Optional[str], reason: str, now: datetime
    ) -> Optional[List[RevokedSession]]: ...


class RevocationRegistry:
    """Append-only blacklist of session tokens.

    A revocation entry for a token hash is authoritative: validation rejects
    the token whenever one exists, whatever the session row says. Entries
    are written together with the session deactivation in a single store
    transaction, so a reader never sees one without the other.
    """

    def __init__(self, store: RevocationStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = logger

    def revoke(
        self,
        session_id: str,
        revoked_by: Optional[str] = None,
        reason: str = DEFAULT_KICK_REASON,
    ) -> RevokedSession:
        """Revoke one session. Revoking an already revoked session returns its entry."""
        result = self.store.revoke_session(session_id, revoked_by, reason, self.clock.now())
        if result is None:
            raise SessionNotFoundError(session_id)
        entry, created = result
        if created:
            self.logger.info(
                "session_revoked",
                session_id=session_id,
                user_id=entry.user_id,
                revoked_by=revoked_by,
                reason=reason,
            )
        return entry

    def revoke_all_and_ban(
        self,
        user_id: str,
        revoked_by: Optional[str] = None,
        reason: str = DEFAULT_BAN_REASON,
    ) -> List[RevokedSession]:
        """Revoke every active session of a user and deactivate the account."""
        entries = self.store.revoke_user_sessions_and_ban(
            user_id, revoked_by, reason, self.clock.now()
        )
        if entries is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.warning(
            "user_banned",
            user_id=user_id,
            revoked_by=revoked_by,
            sessions_revoked=len(entries),
            reason=reason,
        )
        return entries

    def ban_session_owner(
        self,
        session_id: str,
        revoked_by: Optional[str] = None,
        reason: str = DEFAULT_BAN_REASON,
    ) -> List[RevokedSession]:
        session = self.store.get_session(session_id)
        if not session:
            raise SessionNotFoundError(session_id)
        return self.revoke_all_and_ban(session.user_id, revoked_by, reason)

    def get_revocation(self, token_hash: str) -> Optional[RevokedSession]:
        return self.store.get_revocation_by_token_hash(token_hash)

    def is_revoked(self, token_hash: str) -> bool:
        return self.get_revocation(token_hash) is not None
