from __future__ import annotations

import threading
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.clock import Clock, SystemClock
from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.credentials import CredentialVerifier
from authcore.service.email import EmailService
from authcore.service.otp import OtpManager
from authcore.service.rate_limit import LoginGuard
from authcore.service.revocation import RevocationRegistry
from authcore.service.sessions import SessionService
from authcore.service.suspicious import SuspiciousSessionDetector
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app and scripts."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        email_service: Optional[EmailService] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        else:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                self.store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(
                        self.settings.database_url,
                        min_size=self.settings.db_pool_min_size,
                        max_size=self.settings.db_pool_max_size,
                        timeout_seconds=self.settings.db_timeout_seconds,
                    )
                )
                logger.info(
                    "runtime_store_initialized",
                    store_type=store_type,
                    database_url=None
                    if self.settings.use_memory_store
                    else _mask_url_password(self.settings.database_url),
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

        self.email = email_service or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            log_only=self.settings.test_mode,
        )
        self.credentials = CredentialVerifier(self.store)
        self.otp = OtpManager(
            self.store,
            self.email,
            ttl_minutes=self.settings.otp_ttl_minutes,
            rollback_on_send_failure=self.settings.otp_rollback_on_send_failure,
            clock=self.clock,
        )
        self.guard = LoginGuard(
            self.store,
            lockout_threshold=self.settings.lockout_threshold,
            lockout_minutes=self.settings.lockout_minutes,
            fail_open=self.settings.rate_limit_fail_open,
            clock=self.clock,
        )
        self.suspicious = SuspiciousSessionDetector(
            self.store,
            max_sessions=self.settings.suspicious_max_sessions,
            max_ips=self.settings.suspicious_max_ips,
        )
        self.sessions = SessionService(
            self.store,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            revoked_retention_days=self.settings.revoked_retention_days,
            detector=self.suspicious,
            clock=self.clock,
        )
        self.revocations = RevocationRegistry(self.store, clock=self.clock)
        self.auth = AuthService(
            self.store,
            self.settings,
            credentials=self.credentials,
            otp=self.otp,
            guard=self.guard,
            sessions=self.sessions,
            revocations=self.revocations,
            clock=self.clock,
        )

    def run_maintenance(self) -> Dict[str, int]:
        """Delete expired codes and deactivate expired sessions. Idempotent."""
        otps_removed = self.otp.cleanup_expired()
        sessions_expired = self.sessions.cleanup_expired()
        return {"otps_removed": otps_removed, "sessions_expired": sessions_expired}

    def close(self) -> None:
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Optional[Runtime]) -> None:
    """Install a preconfigured runtime, e.g. one built around a test clock."""
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
