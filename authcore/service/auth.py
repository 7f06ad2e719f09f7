from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Optional, Protocol

from authcore.clock import Clock, SystemClock
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.credentials import CredentialVerifier, normalize_email
from authcore.service.errors import (
    AccountInactiveError,
    InvalidCredentialsError,
    LockedOutError,
    OtpDeliveryError,
    OtpError,
    OtpInvalidError,
    RateLimitedError,
    ServiceError,
    SessionRejectedError,
    StoreUnavailableError,
)
from authcore.service.otp import OtpManager, OtpPurpose
from authcore.service.rate_limit import UNKNOWN_CLIENT, LoginGuard
from authcore.service.revocation import RevocationRegistry
from authcore.service.sessions import SessionService, generate_token, hash_token
from authcore.storage.errors import StoreUnavailable
from authcore.storage.models import Session, User

logger = get_logger(__name__)

LOGOUT_REASON = "logout"


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_last_login(self, user_id: str, at: datetime) -> None: ...


@dataclass
class ClientInfo:
    ip_address: str = UNKNOWN_CLIENT
    user_agent: str = UNKNOWN_CLIENT
    device_info: Optional[str] = None
    location: Optional[str] = None


@dataclass
class LoginResult:
    user_id: str
    role: str
    session: Optional[Session] = None
    token: Optional[str] = None
    otp_required: bool = False
    otp_expires_at: Optional[datetime] = None


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    expires_at: datetime


class AuthService:
    """Login, OTP step-up, session validation and logout.

    Login order is fixed: lockout, rate limit, credentials, optional OTP,
    session creation. Every rejected login records a failed attempt so the
    next lockout and rate-limit checks see it.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        credentials: CredentialVerifier,
        otp: OtpManager,
        guard: LoginGuard,
        sessions: SessionService,
        revocations: RevocationRegistry,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.otp = otp
        self.guard = guard
        self.sessions = sessions
        self.revocations = revocations
        self.clock = clock or SystemClock()
        self.logger = logger

    @contextlib.contextmanager
    def _store_errors(
        self,
        operation: str,
        email: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Iterator[None]:
        """Translate storage outages into a 503 for the caller.

        With a ``client`` the outage is also recorded as a failed login attempt.
        """
        try:
            yield
        except StoreUnavailable as exc:
            self.logger.error("auth_store_unavailable", operation=operation, error=str(exc))
            error = StoreUnavailableError()
            if client is not None:
                self._reject(email, client, error)
            raise error from exc

    def _reject(self, email: Optional[str], client: ClientInfo, exc: ServiceError) -> None:
        reason = getattr(exc, "reason", exc.error_code)
        self.guard.log_attempt(email, client.ip_address, client.user_agent, False, reason)
        self.logger.info("login_rejected", ip_address=client.ip_address, reason=reason)

    def _check_client(self, client: ClientInfo) -> None:
        if self.guard.is_locked_out(client.ip_address):
            exc = LockedOutError(reset_at=self.guard.lockout_expires_at(client.ip_address))
            self._reject(None, client, exc)
            raise exc
        window = timedelta(minutes=self.settings.login_rate_limit_window_minutes)
        result = self.guard.check_rate_limit(
            client.ip_address, self.settings.login_rate_limit_max, window
        )
        if not result.allowed:
            exc = RateLimitedError(remaining=result.remaining, reset_at=result.reset_at)
            self._reject(None, client, exc)
            raise exc

    async def login(self, email: str, password: str, client: ClientInfo) -> LoginResult:
        email = normalize_email(email)
        self._check_client(client)
        with self._store_errors("login", email, client):
            try:
                identity = self.credentials.verify(email, password)
            except (InvalidCredentialsError, AccountInactiveError) as exc:
                self._reject(email, client, exc)
                raise
            if self.settings.login_otp_required:
                try:
                    issued = await self.otp.issue(email, OtpPurpose.LOGIN)
                except OtpDeliveryError as exc:
                    self._reject(email, client, exc)
                    raise
                self.logger.info("login_otp_challenge", user_id=identity.user_id)
                return LoginResult(
                    user_id=identity.user_id,
                    role=identity.role,
                    otp_required=True,
                    otp_expires_at=issued.expires_at,
                )
            return self._open_session(identity.user_id, identity.role, email, client)

    async def complete_login(self, email: str, code: str, client: ClientInfo) -> LoginResult:
        """Second step of an OTP login: trade a valid login code for a session."""
        email = normalize_email(email)
        if self.guard.is_locked_out(client.ip_address):
            exc = LockedOutError(reset_at=self.guard.lockout_expires_at(client.ip_address))
            self._reject(None, client, exc)
            raise exc
        with self._store_errors("complete_login", email, client):
            try:
                self.otp.verify(email, code, OtpPurpose.LOGIN)
            except OtpError as exc:
                self._reject(email, client, exc)
                raise
            user = self.store.get_user_by_email(email)
            if not user:
                exc = InvalidCredentialsError(reason="unknown_email")
                self._reject(email, client, exc)
                raise exc
            if not user.is_active:
                exc = AccountInactiveError()
                self._reject(email, client, exc)
                raise exc
            return self._open_session(user.id, user.role, email, client)

    async def resend_login_otp(self, email: str, client: ClientInfo) -> datetime:
        """Issue a fresh login code, superseding the pending one."""
        email = normalize_email(email)
        if self.guard.is_locked_out(client.ip_address):
            raise LockedOutError(reset_at=self.guard.lockout_expires_at(client.ip_address))
        with self._store_errors("resend_login_otp"):
            if not self.otp.has_pending(email, OtpPurpose.LOGIN):
                raise OtpInvalidError()
            issued = await self.otp.issue(email, OtpPurpose.LOGIN)
        return issued.expires_at

    def _open_session(self, user_id: str, role: str, email: str, client: ClientInfo) -> LoginResult:
        now = self.clock.now()
        self.guard.log_attempt(email, client.ip_address, client.user_agent, True)
        try:
            self.store.update_last_login(user_id, now)
        except Exception as exc:
            self.logger.warning("last_login_update_failed", user_id=user_id, error=str(exc))
        token = generate_token()
        session = self.sessions.create(
            user_id,
            hash_token(token),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            device_info=client.device_info,
            location=client.location,
        )
        self.logger.info("login_succeeded", user_id=user_id, session_id=session.id)
        return LoginResult(user_id=user_id, role=role, session=session, token=token)

    async def validate_session(self, token: Optional[str]) -> AuthContext:
        """Resolve a bearer token to its caller or raise ``SessionRejectedError``.

        The revocation registry is consulted before the session row. Any
        storage failure rejects the request with ``StoreUnavailableError``.
        """
        if not token:
            raise SessionRejectedError("missing_token")
        token_hash = hash_token(token)
        try:
            revoked = self.revocations.is_revoked(token_hash)
            session = None if revoked else self.sessions.get_by_token_hash(token_hash)
            user = self.store.get_user(session.user_id) if session else None
        except Exception as exc:
            self.logger.error("session_validation_store_error", error=str(exc))
            raise StoreUnavailableError() from exc

        if revoked:
            raise SessionRejectedError("revoked")
        if not session:
            raise SessionRejectedError("unknown_session")
        if session.is_expired(self.clock.now()):
            raise SessionRejectedError("expired")
        if not user or not user.is_active:
            raise SessionRejectedError("account_inactive")

        self.sessions.touch(token_hash)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            session_id=session.id,
            expires_at=session.expires_at,
        )

    async def logout(self, token: Optional[str]) -> None:
        ctx = await self.validate_session(token)
        with self._store_errors("logout"):
            self.revocations.revoke(ctx.session_id, revoked_by=ctx.user_id, reason=LOGOUT_REASON)
        self.logger.info("logout", user_id=ctx.user_id, session_id=ctx.session_id)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
