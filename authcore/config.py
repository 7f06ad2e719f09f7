from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_timeout_seconds: float = env_field(
        5.0,
        "DB_TIMEOUT_SECONDS",
        description="Upper bound for pool checkout and per-statement execution",
    )

    # One-time passcodes
    otp_ttl_minutes: int = env_field(10, "OTP_EXPIRY_MINUTES")
    otp_rollback_on_send_failure: bool = env_field(
        True,
        "OTP_ROLLBACK_ON_SEND_FAILURE",
        description="Delete a freshly issued code when the email cannot be delivered",
    )
    login_otp_required: bool = env_field(
        False,
        "LOGIN_OTP_REQUIRED",
        description="Require an emailed code after a correct password before a session is issued",
    )

    # Brute force protection
    login_rate_limit_max: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_rate_limit_window_minutes: int = env_field(15, "LOGIN_RATE_LIMIT_WINDOW_MINUTES")
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow logins when the attempt log cannot be read",
    )

    # Sessions
    session_ttl_minutes: int = env_field(30 * 24 * 60, "SESSION_TTL_MINUTES")
    revoked_retention_days: int = env_field(30, "REVOKED_RETENTION_DAYS")
    suspicious_max_sessions: int = env_field(3, "SUSPICIOUS_MAX_SESSIONS")
    suspicious_max_ips: int = env_field(2, "SUSPICIOUS_MAX_IPS")
    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as logging OTP delivery instead of failing",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "otp_ttl_minutes",
        "login_rate_limit_max",
        "login_rate_limit_window_minutes",
        "lockout_threshold",
        "lockout_minutes",
        "session_ttl_minutes",
        "revoked_retention_days",
        "maintenance_interval_seconds",
        "db_pool_min_size",
        "db_pool_max_size",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("suspicious_max_sessions", "suspicious_max_ips")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("db_timeout_seconds")
    @classmethod
    def _ensure_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if not _settings_cache.smtp_host and not _settings_cache.test_mode:
            logger.warning("smtp_not_configured", message="OTP emails cannot be delivered")
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
