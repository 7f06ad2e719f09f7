from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from authcore.clock import Clock, SystemClock
from authcore.logging import get_logger
from authcore.service.credentials import normalize_email
from authcore.service.email import EmailService
from authcore.service.errors import (
    OtpAlreadyUsedError,
    OtpDeliveryError,
    OtpExpiredError,
    OtpInvalidError,
)
from authcore.storage.models import OtpCode

logger = get_logger(__name__)

OTP_LENGTH = 6


class OtpPurpose(str, Enum):
    """What a one-time passcode authorizes."""

    LOGIN = "login"
    REGISTER = "register"
    RESET_PASSWORD = "reset_password"

    @property
    def label(self) -> str:
        return _PURPOSE_LABELS[self]


_PURPOSE_LABELS = {
    OtpPurpose.LOGIN: "Login",
    OtpPurpose.REGISTER: "Registration",
    OtpPurpose.RESET_PASSWORD: "Password Reset",
}


class OtpStore(Protocol):
    def replace_otp(self, otp: OtpCode) -> int: ...

    def find_latest_otp(self, email: str, code: str, purpose: str) -> Optional[OtpCode]: ...

    def get_pending_otp(self, email: str, purpose: str, now: datetime) -> Optional[OtpCode]: ...

    def consume_otp(self, otp_id: str) -> bool: ...

    def delete_otp(self, otp_id: str) -> None: ...

    def delete_expired_otps(self, now: datetime) -> int: ...


@dataclass
class OtpIssue:
    email: str
    purpose: OtpPurpose
    expires_at: datetime


def generate_code() -> str:
    """Uniformly random zero-padded numeric code."""
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


class OtpManager:
    """Issues and verifies single-use email passcodes.

    Per (email, purpose) a code moves NONE -> PENDING -> CONSUMED or
    EXPIRED. Issuing a new code supersedes any pending one in the same
    store transaction, so at most one code is ever pending for the pair.
    """

    def __init__(
        self,
        store: OtpStore,
        email_service: EmailService,
        *,
        ttl_minutes: int = 10,
        rollback_on_send_failure: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.email_service = email_service
        self.ttl_minutes = ttl_minutes
        self.rollback_on_send_failure = rollback_on_send_failure
        self.clock = clock or SystemClock()
        self.logger = logger

    async def issue(self, email: str, purpose: OtpPurpose) -> OtpIssue:
        purpose = OtpPurpose(purpose)
        email = normalize_email(email)
        otp = OtpCode.new(
            email=email,
            code=generate_code(),
            purpose=purpose.value,
            now=self.clock.now(),
            ttl_minutes=self.ttl_minutes,
        )
        superseded = self.store.replace_otp(otp)

        try:
            sent = await asyncio.to_thread(
                self.email_service.send_otp,
                email,
                otp.code,
                purpose.label,
                otp.expires_at,
                self.ttl_minutes,
            )
        except Exception as exc:
            self.logger.error("otp_send_raised", purpose=purpose.value, error=str(exc))
            sent = False

        if not sent:
            if self.rollback_on_send_failure:
                self._discard(otp)
            self.logger.warning(
                "otp_delivery_failed",
                purpose=purpose.value,
                rolled_back=self.rollback_on_send_failure,
            )
            raise OtpDeliveryError()

        self.logger.info(
            "otp_issued",
            purpose=purpose.value,
            superseded=superseded,
            expires_at=otp.expires_at.isoformat(),
        )
        return OtpIssue(email=email, purpose=purpose, expires_at=otp.expires_at)

    def _discard(self, otp: OtpCode) -> None:
        try:
            self.store.delete_otp(otp.id)
        except Exception as exc:
            # Left pending; it still expires on its own
            self.logger.error("otp_rollback_failed", otp_id=otp.id, error=str(exc))

    def verify(self, email: str, code: str, purpose: OtpPurpose) -> OtpCode:
        """Consume a pending code, raising an ``OtpError`` subclass on rejection."""
        purpose = OtpPurpose(purpose)
        email = normalize_email(email)
        code = (code or "").strip()
        if len(code) != OTP_LENGTH or not code.isdigit():
            raise OtpInvalidError()

        otp = self.store.find_latest_otp(email, code, purpose.value)
        if not otp:
            raise OtpInvalidError()
        if otp.is_used:
            raise OtpAlreadyUsedError()
        if otp.is_expired(self.clock.now()):
            raise OtpExpiredError()
        if not self.store.consume_otp(otp.id):
            # Lost the race against a concurrent verification of the same code
            raise OtpAlreadyUsedError()
        otp.is_used = True
        self.logger.info("otp_verified", purpose=purpose.value)
        return otp

    def has_pending(self, email: str, purpose: OtpPurpose) -> bool:
        purpose = OtpPurpose(purpose)
        pending = self.store.get_pending_otp(
            normalize_email(email), purpose.value, self.clock.now()
        )
        return pending is not None

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_otps(self.clock.now())
        if removed:
            self.logger.info("otp_cleanup", removed=removed)
        return removed
