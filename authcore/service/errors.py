from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - account_inactive (403)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - delivery_failed (502)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password (401).

    Both cases share one public message. ``reason`` records which one it
    was for the attempt log and must not be returned to the caller.
    """

    def __init__(self, reason: str = "invalid_credentials") -> None:
        super().__init__("invalid email or password")
        self.reason = reason


class SessionRejectedError(AuthenticationError):
    """Token is missing, unknown, revoked or expired (401)."""

    def __init__(self, reason: str = "invalid_session") -> None:
        super().__init__("invalid session")
        self.reason = reason


class OtpError(AuthenticationError):
    """One-time passcode could not be accepted (401).

    The public message is identical for every subclass; ``reason`` carries
    the specific cause for logs and the attempt record.
    """

    reason = "otp_invalid"

    def __init__(self) -> None:
        super().__init__("invalid or expired code")


class OtpInvalidError(OtpError):
    reason = "otp_invalid"


class OtpExpiredError(OtpError):
    reason = "otp_expired"


class OtpAlreadyUsedError(OtpError):
    reason = "otp_already_used"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountInactiveError(ForbiddenError):
    """Credentials were correct but the account is disabled (403)."""
    error_code = "account_inactive"
    reason = "account_inactive"

    def __init__(self, message: str = "account is inactive") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__("session not found", detail={"session_id": session_id})


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    reason = "rate_limited"

    def __init__(
        self,
        message: str = "too many login attempts, try again later",
        *,
        remaining: int = 0,
        reset_at: Optional[datetime] = None,
    ) -> None:
        detail = {"remaining": remaining}
        if reset_at is not None:
            detail["reset_at"] = reset_at.isoformat()
        super().__init__(message, detail=detail)
        self.remaining = remaining
        self.reset_at = reset_at


class LockedOutError(RateLimitedError):
    """IP address exceeded the failed-login lockout threshold (429)."""
    reason = "locked_out"

    def __init__(self, reset_at: Optional[datetime] = None) -> None:
        super().__init__("too many failed attempts, try again later", reset_at=reset_at)


class OtpDeliveryError(ServiceError):
    """Verification email could not be sent (502)."""
    status_code = 502
    error_code = "delivery_failed"
    reason = "delivery_failed"

    def __init__(self) -> None:
        super().__init__("could not send verification code")


class StoreUnavailableError(ServiceError):
    """Backing store unreachable; the request fails closed (503)."""
    status_code = 503
    error_code = "service_unavailable"
    reason = "store_unavailable"

    def __init__(self, message: str = "service temporarily unavailable") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionRejectedError",
    "OtpError",
    "OtpInvalidError",
    "OtpExpiredError",
    "OtpAlreadyUsedError",
    "ForbiddenError",
    "AccountInactiveError",
    "NotFoundError",
    "SessionNotFoundError",
    "RateLimitedError",
    "LockedOutError",
    "OtpDeliveryError",
    "StoreUnavailableError",
]
