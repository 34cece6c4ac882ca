from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from hotelbook.api.schemas import (
    AuditEntryResponse,
    AuditListResponse,
    Envelope,
    LoginRequest,
    MFAVerifyRequest,
    OtpChallengeResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    SignupRequest,
    TokenRefreshRequest,
    UserResponse,
)
from hotelbook.logging import get_logger
from hotelbook.service.auth import SessionGrant
from hotelbook.service.errors import RateLimitedError, ValidationError
from hotelbook.service.password_policy import strength_label, strength_score
from hotelbook.service.runtime import check_rate_limit, get_runtime
from hotelbook.storage.models import AccountProfile, AuditAction, AuditEntry, RequestOrigin

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from the bucket for ``key``.

    Raises:
        RateLimitedError: 429 with ``retry_after`` when the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(1, reset_seconds)}
        )
    return info


def _origin(request: Request) -> RequestOrigin:
    ip = request.client.host if request.client else None
    return RequestOrigin(
        ip=ip or "unknown",
        user_agent=request.headers.get("user-agent") or "unknown",
    )


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_access_token(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Optional[str]:
    """Access token from the ``Authorization`` header, falling back to the cookie."""
    return _bearer(authorization) or access_cookie


def _apply_session_cookies(response: Response, grant: SessionGrant, settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        grant.tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        grant.tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookies(response: Response, settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name, path="/", secure=settings.cookie_secure, httponly=True, samesite="strict"
        )


def _user_payload(runtime, profile: AccountProfile) -> dict:
    return UserResponse(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        role=profile.role,
        phone=runtime.auth.decrypt_phone(profile),
        mfa_enabled=profile.mfa_enabled,
        password_expired=profile.password_expired,
        last_password_change=profile.last_password_change,
        created_at=profile.created_at,
    ).model_dump(by_alias=True, mode="json")


def _audit_payload(entry: AuditEntry) -> dict:
    return AuditEntryResponse(
        id=entry.id,
        action=entry.action.value,
        outcome=entry.outcome.value,
        account_id=entry.account_id,
        ip=entry.ip,
        user_agent=entry.user_agent,
        metadata=entry.metadata,
        created_at=entry.created_at,
    ).model_dump(by_alias=True, mode="json")


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Register an account and send the first one-time code.

    No tokens are issued here; the caller continues at ``/auth/verify-mfa``.

    Raises:
        400: If the password fails the policy
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    pending = await asyncio.to_thread(
        runtime.auth.signup,
        body.email,
        body.password,
        body.full_name,
        body.phone or None,
        origin=_origin(request),
    )
    return Envelope(
        status="ok",
        data=OtpChallengeResponse(
            email=pending.email,
            requires_mfa=pending.requires_mfa,
            password_strength=strength_label(strength_score(body.password)),
        ).model_dump(by_alias=True),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check the password and send a one-time code.

    Raises:
        401: If credentials are invalid
        403: If the account is locked
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    pending = await asyncio.to_thread(
        runtime.auth.login, body.email, body.password, origin=_origin(request)
    )
    return Envelope(
        status="ok",
        data=OtpChallengeResponse(
            email=pending.email, requires_mfa=pending.requires_mfa
        ).model_dump(by_alias=True, exclude_none=True),
    )


@router.post("/auth/verify-mfa", response_model=Envelope, tags=["auth"])
async def verify_mfa(body: MFAVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:{body.email}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    grant = await asyncio.to_thread(
        runtime.auth.verify_mfa, body.email, body.code, origin=_origin(request)
    )
    _apply_session_cookies(response, grant, runtime.settings)
    return Envelope(status="ok", data={"user": _user_payload(runtime, grant.profile)})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token; the presented one stops working immediately."""
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    grant = await asyncio.to_thread(
        runtime.auth.refresh, presented, origin=_origin(request)
    )
    _apply_session_cookies(response, grant, runtime.settings)
    return Envelope(status="ok", data={"user": _user_payload(runtime, grant.profile)})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    access_token: Optional[str] = Depends(get_access_token),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.auth.logout, access_token, refresh_cookie, origin=_origin(request)
    )
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(access_token: Optional[str] = Depends(get_access_token)):
    runtime = get_runtime()
    profile = await asyncio.to_thread(runtime.auth.authenticate, access_token)
    return Envelope(status="ok", data={"user": _user_payload(runtime, profile)})


@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_profile(access_token: Optional[str] = Depends(get_access_token)):
    runtime = get_runtime()
    profile = await asyncio.to_thread(runtime.auth.authenticate, access_token)
    return Envelope(status="ok", data={"user": _user_payload(runtime, profile)})


@router.put("/user/profile", response_model=Envelope, tags=["user"])
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    access_token: Optional[str] = Depends(get_access_token),
):
    runtime = get_runtime()
    profile = await asyncio.to_thread(
        runtime.auth.update_profile,
        access_token,
        full_name=body.full_name,
        phone=body.phone,
        origin=_origin(request),
    )
    return Envelope(status="ok", data={"user": _user_payload(runtime, profile)})


@router.post("/user/change-password", response_model=Envelope, tags=["user"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    access_token: Optional[str] = Depends(get_access_token),
):
    """Replace the password after checking the current one.

    Allowed while the password is expired; that is how an expired account
    recovers.

    Raises:
        400: If the new password fails the policy or was used recently
        401: If the current password is wrong
    """
    runtime = get_runtime()
    profile = await asyncio.to_thread(
        runtime.auth.authenticate, access_token, allow_expired_password=True
    )
    await _enforce_rate_limit(
        runtime,
        f"password_change:{profile.id}",
        runtime.settings.password_change_rate_limit_per_minute,
        60,
    )
    await asyncio.to_thread(
        runtime.auth.change_password,
        access_token,
        body.current_password,
        body.new_password,
        origin=_origin(request),
    )
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def list_audit(
    access_token: Optional[str] = Depends(get_access_token),
    account_id: Optional[str] = Query(None, alias="accountId", max_length=64),
    action: Optional[str] = Query(None, max_length=32),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.authorize_admin, access_token)
    if account_id is not None:
        try:
            account_id = str(UUID(account_id))
        except ValueError:
            raise ValidationError(
                "accountId must be a UUID", detail={"field": "accountId"}
            ) from None
    action_filter: Optional[AuditAction] = None
    if action:
        try:
            action_filter = AuditAction(action.upper())
        except ValueError:
            raise ValidationError(
                "unknown audit action", detail={"field": "action"}
            ) from None
    entries = await asyncio.to_thread(
        runtime.auth.list_audit,
        account_id=account_id,
        action=action_filter,
        since=since,
        until=until,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=AuditListResponse(
            entries=[AuditEntryResponse(**_audit_payload(entry)) for entry in entries]
        ).model_dump(by_alias=True, mode="json"),
    )
