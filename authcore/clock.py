from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """UTC wall clock that never reports a time earlier than it already has.

    Expiry checks and ``last_activity_at`` updates compare against values
    produced by this clock, so a backwards step of the host clock (NTP
    correction, VM resume) is absorbed by holding the last reading.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        with self._lock:
            if self._last is not None and current < self._last:
                return self._last
            self._last = current
            return current


class FrozenClock:
    """Manually advanced clock for deterministic tests and scripts."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


__all__ = ["Clock", "SystemClock", "FrozenClock"]
