from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from authcore.clock import Clock, SystemClock
from authcore.logging import get_logger
from authcore.storage.models import LoginAttempt

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


class AttemptStore(Protocol):
    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def failed_attempts_since(
        self, ip_address: str, since: datetime
    ) -> Tuple[int, Optional[datetime]]: ...


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime


class LoginGuard:
    """Brute-force protection over the append-only login attempt log.

    Both checks are sliding windows over failed attempts for an IP address.
    ``check_rate_limit`` is the general policy with caller supplied limits;
    ``is_locked_out`` is the fixed lockout policy. When the log cannot be
    read, both follow ``fail_open``.
    """

    def __init__(
        self,
        store: AttemptStore,
        *,
        lockout_threshold: int = 5,
        lockout_minutes: int = 15,
        fail_open: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.lockout_threshold = lockout_threshold
        self.lockout_minutes = lockout_minutes
        self.fail_open = fail_open
        self.clock = clock or SystemClock()
        self.logger = logger

    def check_rate_limit(
        self, ip_address: str, max_attempts: int, window: timedelta
    ) -> RateLimitResult:
        now = self.clock.now()
        if window.total_seconds() <= 0:
            self.logger.warning(
                "rate_limit_invalid_window",
                ip_address=ip_address,
                window_seconds=window.total_seconds(),
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window = timedelta(seconds=60)
        try:
            count, oldest = self.store.failed_attempts_since(ip_address, now - window)
        except Exception as exc:
            self.logger.error(
                "rate_limit_check_failed",
                ip_address=ip_address,
                error=str(exc),
                fail_open=self.fail_open,
            )
            if self.fail_open:
                return RateLimitResult(allowed=True, remaining=max_attempts, reset_at=now + window)
            return RateLimitResult(allowed=False, remaining=0, reset_at=now + window)

        reset_at = oldest + window if oldest else now + window
        return RateLimitResult(
            allowed=count < max_attempts,
            remaining=max(0, max_attempts - count),
            reset_at=reset_at,
        )

    def is_locked_out(self, ip_address: str, lockout_minutes: Optional[int] = None) -> bool:
        minutes = self.lockout_minutes if lockout_minutes is None else lockout_minutes
        now = self.clock.now()
        try:
            count, _ = self.store.failed_attempts_since(
                ip_address, now - timedelta(minutes=minutes)
            )
        except Exception as exc:
            self.logger.error(
                "lockout_check_failed",
                ip_address=ip_address,
                error=str(exc),
                fail_open=self.fail_open,
            )
            return not self.fail_open
        locked = count >= self.lockout_threshold
        if locked:
            self.logger.warning("ip_locked_out", ip_address=ip_address, failures=count)
        return locked

    def lockout_expires_at(self, ip_address: str) -> Optional[datetime]:
        """When the oldest failure counted towards a lockout leaves the window."""
        window = timedelta(minutes=self.lockout_minutes)
        try:
            _, oldest = self.store.failed_attempts_since(ip_address, self.clock.now() - window)
        except Exception as exc:
            self.logger.warning("lockout_expiry_lookup_failed", ip_address=ip_address, error=str(exc))
            return None
        return oldest + window if oldest else None

    def log_attempt(
        self,
        email: Optional[str],
        ip_address: str,
        user_agent: Optional[str],
        success: bool,
        failure_reason: Optional[str] = None,
    ) -> None:
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            email=email,
            ip_address=ip_address or UNKNOWN_CLIENT,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason,
            created_at=self.clock.now(),
        )
        try:
            self.store.record_login_attempt(attempt)
        except Exception as exc:
            self.logger.warning(
                "login_attempt_log_failed",
                ip_address=attempt.ip_address,
                success=success,
                error=str(exc),
            )
