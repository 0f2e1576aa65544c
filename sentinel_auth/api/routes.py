from __future__ import annotations

import asyncio
import ipaddress
from typing import Iterable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from sentinel_auth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from sentinel_auth.logging import get_logger
from sentinel_auth.service.auth import AuthContext
from sentinel_auth.service.errors import RateLimitedError
from sentinel_auth.service.runtime import check_rate_limit, get_runtime
from sentinel_auth.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


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


def _peer_is_trusted(peer: str, trusted_proxies: Iterable[str]) -> bool:
    for candidate in trusted_proxies:
        if peer == candidate:
            return True
        if "/" in candidate:
            try:
                if ipaddress.ip_address(peer) in ipaddress.ip_network(candidate, strict=False):
                    return True
            except ValueError:
                continue
    return False


def _client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> Optional[str]:
    """Address of the caller.

    The socket peer, unless the peer is a configured proxy, in which case the
    first ``X-Forwarded-For`` entry is used.
    """
    peer = request.client.host if request.client else None
    if peer is None or not _peer_is_trusted(peer, trusted_proxies):
        return peer
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer


async def _enforce_rate_limit(
    runtime,
    action: str,
    request: Request,
    response: Optional[Response] = None,
    *,
    subject: Optional[str] = None,
) -> RateLimitInfo:
    """Count the request against the caller's window for ``action``.

    The window is keyed by ``subject`` when given (an account id for
    authenticated routes), else by client address.

    Raises:
        RateLimitedError if the window is exhausted
    """
    limit = runtime.settings.rate_limit_requests
    window_seconds = runtime.settings.rate_limit_window_seconds
    client_ip = _client_ip(request, runtime.settings.trusted_proxies)
    key = f"{action}:{subject or client_ip or 'unknown'}"
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning(
            "rate_limit_exceeded", action=action, client_ip=client_ip, user_id=subject
        )
        raise RateLimitedError(
            "Too many requests, please try again later.",
            detail={"retry_after": max(1, reset_seconds)},
        )
    return info


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def _set_refresh_cookie(response: Response, runtime, tokens: TokenPair) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        max_age=int(runtime.issuer.refresh_ttl.total_seconds()),
        path="/",
    )


def _clear_refresh_cookie(response: Response, runtime) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified account and email a verification link.

    Raises:
        409: If the email is already registered
        429: If the caller exceeded the rate limit
        500: If the verification email could not be sent
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "register", request, response)
    result = await asyncio.to_thread(runtime.auth.register, body.email, body.password)
    return Envelope(status="ok", data=RegisterResponse(**result).model_dump())


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "verify_email", request, response)
    result = await asyncio.to_thread(runtime.auth.verify_email, token)
    return Envelope(status="ok", data=MessageResponse(**result).model_dump())


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: ResendVerificationRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "resend_verification", request, response)
    result = await asyncio.to_thread(runtime.auth.resend_verification, body.email)
    return Envelope(status="ok", data=MessageResponse(**result).model_dump())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange credentials for an access token and a refresh cookie.

    Raises:
        401: Invalid credentials or unverified email
        429: If the caller exceeded the rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "login", request, response)
    result = await asyncio.to_thread(
        runtime.auth.login,
        body.email,
        body.password,
        ip_address=_client_ip(request, runtime.settings.trusted_proxies),
        user_agent=request.headers.get("user-agent"),
    )
    _set_refresh_cookie(response, runtime, result.tokens)
    payload = LoginResponse(
        access_token=result.access_token,
        token_type=result.tokens.token_type,
        expires_at=result.tokens.access_expires_at,
        user=UserResponse(**result.user),
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    """Rotate the refresh cookie and return a new access token."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "refresh", request, response)
    tokens = await asyncio.to_thread(runtime.auth.refresh, refresh_token)
    _set_refresh_cookie(response, runtime, tokens)
    payload = TokenResponse(
        access_token=tokens.access_token,
        token_type=tokens.token_type,
        expires_at=tokens.access_expires_at,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "logout", request, response)
    result = await asyncio.to_thread(runtime.auth.logout, refresh_token)
    _clear_refresh_cookie(response, runtime)
    return Envelope(status="ok", data=MessageResponse(**result).model_dump())


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "forgot_password", request, response)
    result = await asyncio.to_thread(runtime.auth.forgot_password, body.email)
    return Envelope(status="ok", data=MessageResponse(**result).model_dump())


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "reset_password", request, response)
    result = await asyncio.to_thread(
        runtime.auth.reset_password, body.token, body.new_password
    )
    _clear_refresh_cookie(response, runtime)
    return Envelope(status="ok", data=MessageResponse(**result).model_dump())


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Replace the password and sign out every session.

    Attempts are counted per account, not per client address.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "change_password", request, response, subject=principal.user_id
    )
    result = await asyncio.to_thread(
        runtime.auth.change_password,
        principal.user_id,
        body.current_password,
        body.new_password,
    )
    _clear_refresh_cookie(response, runtime)
    return Envelope(status="ok", data=MessageResponse(**result).model_dump())


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "me", request, response, subject=principal.user_id)
    user = await asyncio.to_thread(runtime.auth.get_current_user, principal.user_id)
    return Envelope(status="ok", data=UserResponse(**user).model_dump())
