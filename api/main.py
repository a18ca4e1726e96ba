"""
api/main.py -- FastAPI application entry point for Portcullis.

Run with:      uvicorn api.main:app --reload
               python main.py serve

create_app(settings) builds a fully wired application; the module-level `app`
is create_app(get_settings()). Tests build their own app for other AUTH_MODE
values.

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route, per-IP limits from api.limiter

Lifespan handles startup (stores, role seed, services, purge task) and
shutdown (cancel purge task, close DB engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.api_keys import service_router
from api.routes.v1.auth import disabled_router
from api.routes.v1.auth import router as auth_router
from auth.credentials import CredentialHasher
from auth.errors import AuthError, RateLimitedError
from auth.magic_link import MagicLinkService
from auth.mailer import Mailer, build_mailer
from auth.oauth import GoogleOAuthProvider, GoogleOAuthService
from auth.otp import OTPService
from auth.passwords import PasswordHasher, PasswordService
from auth.ratelimit import RateLimiter
from auth.sessions import SessionIssuer
from auth.store import AccountStore, SecretStore
from auth.tokens import TokenCodec
from core.config import API_PREFIX, Settings, get_settings

__version__ = "0.1.0"

DEFAULT_ROLES = ["user", "admin"]
PURGE_INTERVAL_SECONDS = 15 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("portcullis.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_services(
    app: FastAPI,
    settings: Settings,
    *,
    accounts: AccountStore | None = None,
    secrets: SecretStore | None = None,
    mailer: Mailer | None = None,
    clock: Callable[[], datetime] | None = None,
    oauth_transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Build every auth collaborator and attach it to app.state.

    Keyword overrides exist for tests: in-memory stores, a recording mailer,
    a controllable clock, an httpx.MockTransport for Google.
    """
    accounts = accounts or AccountStore(settings.database_url)
    secrets = secrets or SecretStore(settings.database_url)
    accounts.ensure_roles(DEFAULT_ROLES)
    clock_kwargs = {"clock": clock} if clock is not None else {}

    codec = TokenCodec(settings)
    hasher = CredentialHasher(codec)
    sessions = SessionIssuer(codec, accounts)
    mailer = mailer or build_mailer(settings)
    identity_limiter = RateLimiter(
        settings.magic_link_rate_limit_max,
        settings.magic_link_rate_limit_window_seconds,
        storage_uri=settings.rate_limit_storage_uri,
        namespace="magic-link",
    )
    reset_limiter = RateLimiter(
        settings.magic_link_rate_limit_max,
        settings.magic_link_rate_limit_window_seconds,
        storage_uri=settings.rate_limit_storage_uri,
        namespace="password-reset",
    )

    app.state.settings = settings
    app.state.codec = codec
    app.state.accounts = accounts
    app.state.secrets = secrets
    app.state.sessions = sessions
    app.state.identity_limiter = identity_limiter
    app.state.reset_limiter = reset_limiter
    app.state.magic_links = MagicLinkService(
        settings, accounts, secrets, hasher, identity_limiter, mailer, sessions, **clock_kwargs
    )
    app.state.otp = OTPService(settings, accounts, secrets, hasher, mailer, sessions, **clock_kwargs)
    app.state.passwords = PasswordService(
        settings,
        accounts,
        secrets,
        hasher,
        PasswordHasher(settings.password_hash_rounds),
        reset_limiter,
        mailer,
        sessions,
        **clock_kwargs,
    )
    app.state.google = GoogleOAuthService(
        settings, accounts, sessions, GoogleOAuthProvider(settings, transport=oauth_transport)
    )


def purge_expired(app: FastAPI) -> dict[str, int]:
    """One maintenance pass over expired or used secrets and idle limiter keys."""
    return {
        "magic_links": app.state.magic_links.cleanup_expired_tokens(),
        "otp_codes": app.state.otp.cleanup_expired_codes(),
        "password_resets": app.state.passwords.cleanup_expired_tokens(),
        "rate_limit_keys": app.state.identity_limiter.sweep() + app.state.reset_limiter.sweep(),
    }


async def _purge_loop(app: FastAPI) -> None:
    """Run purge_expired every PURGE_INTERVAL_SECONDS.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            counts = purge_expired(app)
        except Exception:
            # A failed pass must not kill the loop; the next pass retries.
            logger.exception("Purge pass failed")
            continue
        logger.info("Purge pass complete: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores and services on startup; close them on shutdown.

    Startup order matters: stores first (services hold references to them),
    role seed before any request can create an account, purge task last
    (it references the services).
    """
    settings: Settings = app.state.settings
    logger.info("Portcullis API starting up (AUTH_MODE=%s)", settings.auth_mode)
    init_services(app, settings)
    logger.info("Auth services initialized (%d accounts)", app.state.accounts.count_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.accounts.close()
    app.state.secrets.close()
    logger.info("Portcullis API shutdown complete")


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. Query strings are never
# logged: magic-link tokens and OAuth codes travel there.
# ---------------------------------------------------------------------------


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto HTTP.

    Non-operational errors (InternalError) have already been logged where
    they happened; the client gets the generic retry-later message only.
    """
    if not exc.is_operational:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a per-IP limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for HTTP exceptions, including unmatched routes.

    Covers router 404/405 responses as well as HTTPException raised by handlers.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="Something went wrong. Please try again later.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Portcullis API",
        description="Passwordless (magic link, one-time code) and Google OAuth authentication.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Register in the order you want the request to encounter them:
    # TrustedHost -> CORS -> SlowAPI.
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=_split(settings.allowed_hosts) or ["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_split(settings.cors_allowed_origins),
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", settings.api_key_header],
        max_age=3600,
    )
    app.add_middleware(SlowAPIMiddleware)
    app.middleware("http")(log_requests)

    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter

    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    if settings.rest_enabled:
        app.include_router(auth_router, prefix=API_PREFIX, tags=["Auth"])
        app.include_router(api_keys_router, prefix=API_PREFIX, tags=["API Keys"])
        logger.info("REST auth endpoints enabled (AUTH_MODE=%s)", settings.auth_mode)
    else:
        app.include_router(disabled_router, prefix=API_PREFIX)
        logger.info("REST auth endpoints disabled (AUTH_MODE=%s)", settings.auth_mode)
    app.include_router(service_router, prefix=API_PREFIX, tags=["Service"])

    # Health is registered on the app itself so it is reachable in every
    # AUTH_MODE. No rate limit: load balancers must not be throttled.
    @app.get(f"{API_PREFIX}/health", tags=["Health"])
    async def health() -> HealthResponse:
        """Return API liveness, version and auth mode."""
        return HealthResponse(version=__version__, auth_mode=settings.auth_mode)

    return app


app = create_app()
