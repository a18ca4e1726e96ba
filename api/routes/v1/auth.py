"""
api/routes/v1/auth.py -- Login REST endpoints: passwordless, password and Google.

Routes (registered only when AUTH_MODE is rest or hybrid):
  POST /api/v1/auth/magic-link/request  -- email a magic link (same answer for unknown emails)
  GET  /api/v1/auth/magic-link/verify   -- browser: redeem link, redirect to frontend
  POST /api/v1/auth/magic-link/verify   -- API: redeem link, JSON token pair
  POST /api/v1/auth/otp/request         -- email a six-digit code
  POST /api/v1/auth/otp/verify          -- verify code; token pair when should_login
  POST /api/v1/auth/register            -- create a password account
  POST /api/v1/auth/login               -- email and password, JSON token pair
  POST /api/v1/auth/password/forgot     -- email a password reset link (same answer for unknown emails)
  POST /api/v1/auth/password/reset      -- set a new password from a reset token
  GET  /api/v1/auth/google/login        -- 302 to Google with a signed state
  GET  /api/v1/auth/google/callback     -- browser: finish Google login, redirect to frontend
  POST /api/v1/auth/token/refresh       -- new access token for a refresh token
  GET  /api/v1/auth/me                  -- current account (bearer token)

disabled_router answers every /api/v1/auth/* path with 404 and a hint when
REST auth is off.

Security:
  [H2] Credential request/verify endpoints are rate-limited per IP
       (AUTH_RATE_LIMIT) on top of the per-email magic-link throttle.
  [M5] Cache-Control: no-store on every response that carries tokens.
  [C2] Browser flows redirect only through auth/redirects.py; when no safe
       URL can be built they answer with JSON instead.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import auth_rate_limit, limiter
from api.models import (
    ErrorDetail,
    ErrorResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MagicLinkRequest,
    MagicLinkVerifyRequest,
    MessageResponse,
    OTPRequest,
    OTPVerifyRequest,
    OTPVerifyResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import require_bearer
from auth.errors import AuthError, NotFoundError, UnauthorizedError
from auth.models import AuthResult, Principal
from auth.redirects import build_error_redirect, build_success_redirect
from core.config import Settings

logger = logging.getLogger("portcullis.api.auth")

# Auth policy:
# - magic-link, otp, password, google, token/refresh:  public -- these ARE the login endpoints
# - GET /api/v1/auth/me:                      requires a bearer token (require_bearer)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_response(settings: Settings, result: AuthResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=settings.access_token_expire_seconds,
        user=UserResponse.from_user(result.user),
    )


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _success_redirect(settings: Settings, result: AuthResult) -> Response:
    url = build_success_redirect(settings, result.access_token, result.refresh_token, result.user)
    if url is not None:
        resp: Response = RedirectResponse(url, status_code=302)
    else:
        logger.warning("FRONTEND_SUCCESS_URL rejected by redirect policy; answering with JSON")
        resp = JSONResponse(content=_token_response(settings, result).model_dump())
    _no_store(resp)
    return resp


def _error_redirect(settings: Settings, exc: AuthError, error: str, message: str | None = None) -> Response:
    """Redirect to the frontend error page, or fall back to the JSON envelope."""
    message = message or exc.message
    url = build_error_redirect(settings, error, message)
    if url is not None:
        return RedirectResponse(url, status_code=302)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=error, message=message)).model_dump(),
    )


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # [H2] -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/magic-link/request", response_model=MessageResponse)
async def request_magic_link(request: Request, body: MagicLinkRequest) -> MessageResponse:
    """Send a magic link. The response never reveals whether the account exists."""
    result = await request.app.state.magic_links.request_magic_link(body.email)
    return MessageResponse(**result)


@router.get("/auth/magic-link/verify", include_in_schema=True)
async def verify_magic_link_redirect(request: Request, token: str | None = None) -> Response:
    """Browser landing for the emailed link. Always answers with a redirect when one is safe."""
    settings: Settings = request.app.state.settings
    if not token:
        return _error_redirect(
            settings, UnauthorizedError("Magic link token is required"), "invalid_token",
            "Magic link token is missing or invalid",
        )
    try:
        result = await request.app.state.magic_links.verify_magic_link(token)
    except AuthError as exc:
        if exc.is_operational:
            return _error_redirect(settings, exc, "auth_failed")
        return _error_redirect(settings, exc, "server_error", "An unexpected error occurred during authentication")
    return _success_redirect(settings, result)


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/magic-link/verify", response_model=TokenResponse)
async def verify_magic_link(request: Request, body: MagicLinkVerifyRequest) -> JSONResponse:
    """Redeem a magic-link token for a token pair (API clients, SPA frontends)."""
    result = await request.app.state.magic_links.verify_magic_link(body.token)
    resp = JSONResponse(content=_token_response(request.app.state.settings, result).model_dump())
    _no_store(resp)
    return resp


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/otp/request", response_model=MessageResponse)
async def request_otp(request: Request, body: OTPRequest) -> MessageResponse:
    result = await request.app.state.otp.request_otp(body.email)
    return MessageResponse(**result)


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/otp/verify", response_model=OTPVerifyResponse)
async def verify_otp(request: Request, body: OTPVerifyRequest) -> JSONResponse:
    """Verify a code. Marks the email verified; returns tokens when should_login is true."""
    result = await request.app.state.otp.verify_otp(body.email, body.code, body.should_login)
    resp = JSONResponse(
        content=OTPVerifyResponse(
            success=result.success,
            message=result.message,
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
        ).model_dump()
    )
    _no_store(resp)
    return resp


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/register", response_model=UserResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a password account. Log in separately to get tokens."""
    user = request.app.state.passwords.register(body.email, body.password, body.first_name, body.last_name)
    return UserResponse.from_user(user)


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/login", response_model=TokenResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    result = request.app.state.passwords.login(body.email, body.password)
    resp = JSONResponse(content=_token_response(request.app.state.settings, result).model_dump())
    _no_store(resp)
    return resp


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/password/forgot", response_model=MessageResponse)
async def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Send a reset link. The response never reveals whether the account exists."""
    result = await request.app.state.passwords.request_password_reset(body.email)
    return MessageResponse(**result)


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/password/reset", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    result = await request.app.state.passwords.reset_password(body.token, body.password)
    return MessageResponse(**result)


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/google/login")
async def google_login(request: Request) -> Response:
    """Redirect the browser to Google's consent screen."""
    settings: Settings = request.app.state.settings
    try:
        url = request.app.state.google.initiate()
    except AuthError as exc:
        return _error_redirect(settings, exc, "oauth_init_failed", "Failed to initiate Google OAuth authentication")
    return RedirectResponse(url, status_code=302)


@router.get("/auth/google/callback")
async def google_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> Response:
    """Finish the Google login and hand the tokens to the frontend.

    The exchange runs shielded: if the browser disconnects mid-flight, the
    code exchange and account upsert still complete and the result is dropped.
    """
    settings: Settings = request.app.state.settings
    try:
        result = await asyncio.shield(request.app.state.google.callback(code, state, error))
    except AuthError as exc:
        if exc.is_operational:
            return _error_redirect(settings, exc, exc.code)
        return _error_redirect(settings, exc, "oauth_callback_failed", "Google OAuth authentication failed")
    return _success_redirect(settings, result)


# ---------------------------------------------------------------------------
# Tokens and identity
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # [H2]
@router.post("/auth/token/refresh", response_model=TokenResponse)
async def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Issue a new access token. The refresh token is returned unchanged."""
    result = request.app.state.sessions.refresh(body.refresh_token or "")
    resp = JSONResponse(content=_token_response(request.app.state.settings, result).model_dump())
    _no_store(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
async def me(request: Request, principal: Principal = Depends(require_bearer)) -> UserResponse:
    """Return the account behind the bearer token."""
    user = request.app.state.accounts.get_by_id(principal.subject_id)
    if user is None or not user.is_active:
        raise UnauthorizedError("Account not found or inactive.")
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Disabled mode
# ---------------------------------------------------------------------------

disabled_router = APIRouter()


@disabled_router.api_route(
    "/auth/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def rest_auth_disabled(path: str) -> JSONResponse:
    exc = NotFoundError("REST authentication endpoints are not enabled")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rest_auth_disabled",
                message=exc.message,
                detail="Set AUTH_MODE to 'rest' or 'hybrid' to enable these endpoints",
            )
        ).model_dump(),
    )
