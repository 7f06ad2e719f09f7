from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    password_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


@dataclass
class OtpCode:
    id: str
    email: str
    code: str
    purpose: str
    expires_at: datetime
    created_at: datetime
    is_used: bool = False

    @classmethod
    def new(cls, email: str, code: str, purpose: str, now: datetime, ttl_minutes: int) -> "OtpCode":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            code=code,
            purpose=purpose,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class LoginAttempt:
    id: str
    ip_address: str
    success: bool
    created_at: datetime
    email: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    login_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        now: datetime,
        expires_at: datetime,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: str | None = None,
        location: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            login_at=now,
            last_activity_at=now,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            location=location,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class RevokedSession:
    id: str
    session_id: str
    token_hash: str
    user_id: str
    reason: str
    revoked_at: datetime
    revoked_by: Optional[str] = None

    @classmethod
    def for_session(
        cls, session: Session, revoked_by: Optional[str], reason: str, now: datetime
    ) -> "RevokedSession":
        return cls(
            id=str(uuid.uuid4()),
            session_id=session.id,
            token_hash=session.token_hash,
            user_id=session.user_id,
            reason=reason,
            revoked_at=now,
            revoked_by=revoked_by,
        )


@dataclass
class SessionListing:
    """Session row joined with the owning user's display fields."""

    session: Session
    user_email: Optional[str] = None
    user_name: Optional[str] = None


@dataclass
class SessionPage:
    items: List[SessionListing]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass
class SessionStats:
    total: int = 0
    active: int = 0
    inactive: int = 0
    expired: int = 0
    suspicious: int = 0


@dataclass
class SuspiciousUser:
    user_id: str
    email: Optional[str]
    session_count: int
    ip_count: int
    ip_addresses: List[str] = field(default_factory=list)
    name: Optional[str] = None


@dataclass
class SessionFilters:
    user_id: Optional[str] = None
    is_active: Optional[bool] = None
    ip_address: Optional[str] = None
    search: Optional[str] = None
