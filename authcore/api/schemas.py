from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authcore.storage.models import Session, SessionListing, SuspiciousUser

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "account_inactive",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "delivery_failed",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_OTP_PATTERN = re.compile(r"^[0-9]{6}$")


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    device_info: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class OtpVerifyRequest(BaseModel):
    email: str
    code: str

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = (value or "").strip()
        if not _OTP_PATTERN.match(value):
            raise ValueError("code must be 6 digits")
        return value


class OtpResendRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class RevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class AuthResponse(BaseModel):
    user_id: str
    role: str = "user"
    otp_required: bool = False
    otp_expires_at: Optional[datetime] = None
    session_id: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None


class SessionInfo(BaseModel):
    user_id: str
    role: str
    session_id: str
    expires_at: datetime


class SessionOut(BaseModel):
    id: str
    user_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    location: Optional[str] = None
    login_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_active: bool
    user_email: Optional[str] = None
    user_name: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session, *, user_email: Optional[str] = None, user_name: Optional[str] = None) -> "SessionOut":
        return cls(
            id=session.id,
            user_id=session.user_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            device_info=session.device_info,
            location=session.location,
            login_at=session.login_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            is_active=session.is_active,
            user_email=user_email,
            user_name=user_name,
        )

    @classmethod
    def from_listing(cls, listing: SessionListing) -> "SessionOut":
        return cls.from_session(
            listing.session, user_email=listing.user_email, user_name=listing.user_name
        )


class SessionListResponse(BaseModel):
    items: List[SessionOut]
    total: int
    page: int
    limit: int
    total_pages: int


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    inactive: int
    expired: int
    suspicious: int


class SuspiciousUserOut(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    session_count: int
    ip_count: int
    ip_addresses: List[str] = Field(default_factory=list)

    @classmethod
    def from_model(cls, item: SuspiciousUser) -> "SuspiciousUserOut":
        return cls(
            user_id=item.user_id,
            email=item.email,
            name=item.name,
            session_count=item.session_count,
            ip_count=item.ip_count,
            ip_addresses=item.ip_addresses,
        )


class RevocationOut(BaseModel):
    session_id: str
    user_id: str
    revoked_by: Optional[str] = None
    reason: str
    revoked_at: datetime


class BanResponse(BaseModel):
    user_id: str
    sessions_revoked: int
    revocations: List[RevocationOut]
