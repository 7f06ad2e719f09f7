from __future__ import annotations

from typing import List, Protocol

from authcore.storage.models import SuspiciousUser


class SuspiciousStore(Protocol):
    def suspicious_users(self, max_sessions: int, max_ips: int) -> List[SuspiciousUser]: ...


class SuspiciousSessionDetector:
    """Flags users whose active sessions look like account sharing or takeover.

    A user is flagged when their active session count exceeds
    ``max_sessions`` or their active sessions span more than ``max_ips``
    distinct addresses. Read-only.
    """

    def __init__(self, store: SuspiciousStore, *, max_sessions: int = 3, max_ips: int = 2) -> None:
        self.store = store
        self.max_sessions = max_sessions
        self.max_ips = max_ips

    def list(self) -> List[SuspiciousUser]:
        return self.store.suspicious_users(self.max_sessions, self.max_ips)

    def count(self) -> int:
        return len(self.list())
