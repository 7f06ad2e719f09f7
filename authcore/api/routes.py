from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Query, Request

from authcore.api.schemas import (
    AuthResponse,
    BanResponse,
    Envelope,
    LoginRequest,
    OtpResendRequest,
    OtpVerifyRequest,
    RevocationOut,
    RevokeRequest,
    SessionInfo,
    SessionListResponse,
    SessionOut,
    SessionStatsResponse,
    SuspiciousUserOut,
)
from authcore.logging import get_logger
from authcore.service.auth import AuthContext, ClientInfo, LoginResult, extract_bearer
from authcore.service.errors import SessionNotFoundError, ValidationError
from authcore.service.rate_limit import UNKNOWN_CLIENT
from authcore.service.revocation import DEFAULT_BAN_REASON, DEFAULT_KICK_REASON
from authcore.service.runtime import get_runtime
from authcore.storage.models import RevokedSession, SessionFilters

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent") or UNKNOWN_CLIENT,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.validate_session(extract_bearer(authorization))


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != "admin":
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _auth_response(result: LoginResult) -> AuthResponse:
    if result.otp_required:
        return AuthResponse(
            user_id=result.user_id,
            role=result.role,
            otp_required=True,
            otp_expires_at=result.otp_expires_at,
        )
    return AuthResponse(
        user_id=result.user_id,
        role=result.role,
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        access_token=result.token,
        token_type="bearer",
    )


def _revocation_out(entry: RevokedSession) -> RevocationOut:
    return RevocationOut(
        session_id=entry.session_id,
        user_id=entry.user_id,
        revoked_by=entry.revoked_by,
        reason=entry.reason,
        revoked_at=entry.revoked_at,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns a bearer token, or an OTP challenge when login codes are required.

    Raises:
        401: If credentials are invalid
        403: If the account is inactive
        429: If the client IP is locked out or rate limited
    """
    runtime = get_runtime()
    client = get_client_info(request)
    client.device_info = body.device_info
    result = await runtime.auth.login(body.email, body.password, client)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OtpVerifyRequest, request: Request):
    """Exchange an emailed login code for a session."""
    runtime = get_runtime()
    result = await runtime.auth.complete_login(body.email, body.code, get_client_info(request))
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: OtpResendRequest, request: Request):
    runtime = get_runtime()
    expires_at = await runtime.auth.resend_login_otp(body.email, get_client_info(request))
    return Envelope(status="ok", data={"otp_expires_at": expires_at.isoformat()})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.auth.logout(extract_bearer(authorization))
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=SessionInfo(
            user_id=principal.user_id,
            role=principal.role,
            session_id=principal.session_id,
            expires_at=principal.expires_at,
        ),
    )


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    ip_address: Optional[str] = Query(None, max_length=64),
    search: Optional[str] = Query(None, max_length=255),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    filters = SessionFilters(
        user_id=user_id, is_active=is_active, ip_address=ip_address, search=search
    )
    result = runtime.sessions.list_sessions(filters, page=page, limit=limit)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionOut.from_listing(item) for item in result.items],
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
        ),
    )


@router.get("/sessions/stats", response_model=Envelope, tags=["sessions"])
async def session_stats(principal: AuthContext = Depends(get_admin_user)):
    stats = get_runtime().sessions.stats()
    return Envelope(
        status="ok",
        data=SessionStatsResponse(
            total=stats.total,
            active=stats.active,
            inactive=stats.inactive,
            expired=stats.expired,
            suspicious=stats.suspicious,
        ),
    )


@router.get("/sessions/suspicious", response_model=Envelope, tags=["sessions"])
async def suspicious_sessions(principal: AuthContext = Depends(get_admin_user)):
    flagged = get_runtime().suspicious.list()
    return Envelope(
        status="ok", data=[SuspiciousUserOut.from_model(item) for item in flagged]
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def kick_session(
    session_id: str = Path(..., max_length=64),
    body: Optional[RevokeRequest] = Body(None),
    principal: AuthContext = Depends(get_admin_user),
):
    """Revoke a single session; the owner is signed out on their next request."""
    runtime = get_runtime()
    reason = (body.reason if body else None) or DEFAULT_KICK_REASON
    entry = runtime.revocations.revoke(session_id, revoked_by=principal.user_id, reason=reason)
    return Envelope(status="ok", data=_revocation_out(entry))


@router.post("/sessions/{session_id}/ban", response_model=Envelope, tags=["sessions"])
async def ban_session_owner(
    session_id: str = Path(..., max_length=64),
    body: Optional[RevokeRequest] = Body(None),
    principal: AuthContext = Depends(get_admin_user),
):
    """Revoke every session of the session's owner and deactivate the account."""
    runtime = get_runtime()
    target = runtime.sessions.get(session_id)
    if not target:
        raise SessionNotFoundError(session_id)
    if target.user_id == principal.user_id:
        raise ValidationError("cannot ban your own account")
    reason = (body.reason if body else None) or DEFAULT_BAN_REASON
    entries = runtime.revocations.ban_session_owner(
        session_id, revoked_by=principal.user_id, reason=reason
    )
    return Envelope(
        status="ok",
        data=BanResponse(
            user_id=target.user_id,
            sessions_revoked=len(entries),
            revocations=[_revocation_out(e) for e in entries],
        ),
    )
