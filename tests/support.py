"""
tests/support.py -- Test doubles and builders shared by the test modules.

  - Clock / RecordingMailer: a controllable time source and an email stub
    that keeps every message so tests can pull the raw secret out of it
  - make_settings / make_stores / create_account / build_services
  - google_transport: httpx.MockTransport standing in for Google
  - patch_lifespan: wires test stores into an app instead of the real lifespan

Imported as tests.support by conftest.py and the test modules. The process
environment is prepared by conftest.py before this module is first imported.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx

from auth.credentials import CredentialHasher
from auth.magic_link import MagicLinkService
from auth.mailer import EmailMessage, Mailer, SendResult
from auth.models import User
from auth.oauth import GoogleOAuthProvider, GoogleOAuthService
from auth.otp import OTPService
from auth.passwords import PasswordHasher, PasswordService
from auth.ratelimit import RateLimiter
from auth.sessions import SessionIssuer
from auth.store import AccountStore, SecretStore
from auth.tokens import TokenCodec
from core.config import Settings

TEST_SECRET = "s" * 48
TEST_ACCESS_SECRET = "a" * 48
TEST_REFRESH_SECRET = "r" * 48

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class Clock:
    """Callable returning a fixed aware UTC datetime until advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingMailer(Mailer):
    """Keeps every message. fail / delay simulate a broken or hanging provider."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []
        self.fail = False
        self.delay = 0.0

    async def send(self, message: EmailMessage) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return SendResult(success=False, error="provider rejected message")
        self.sent.append(message)
        return SendResult(success=True, message_id=uuid.uuid4().hex)

    def last_token(self) -> str:
        """Raw magic-link token from the most recent email."""
        match = re.search(r"token=([0-9a-f]{64})", self.sent[-1].html_body)
        assert match, "no magic link in last email"
        return match.group(1)

    def last_code(self) -> str:
        """Raw one-time code from the most recent email."""
        match = re.search(r"otp=(\d{6})", self.sent[-1].html_body)
        assert match, "no code in last email"
        return match.group(1)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Settings with fixed secrets, independent of the process environment."""
    values = {
        "debug": True,
        "auth_mode": "hybrid",
        "secret_key": TEST_SECRET,
        "access_token_secret": TEST_ACCESS_SECRET,
        "refresh_token_secret": TEST_REFRESH_SECRET,
        "google_client_id": "test-client-id.apps.googleusercontent.com",
        "google_client_secret": "test-client-secret",
        "app_url": "http://localhost:8000",
        "frontend_success_url": "http://localhost:3000",
        "password_hash_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


def make_stores(name: str | None = None) -> tuple[AccountStore, SecretStore]:
    """Account and secret stores sharing one named in-memory database."""
    name = name or uuid.uuid4().hex
    url = f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true"
    accounts = AccountStore(db_url=url)
    secrets = SecretStore(db_url=url)
    accounts.ensure_roles(["user", "admin"])
    return accounts, secrets


def create_account(accounts: AccountStore, email: str, roles: list[str] | None = None, **fields) -> User:
    user_id = accounts.create_user(User(email=email, roles=roles if roles is not None else ["user"], **fields))
    return accounts.get_by_id(user_id)


def build_services(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> SimpleNamespace:
    accounts, secrets = make_stores()
    clock = Clock()
    mailer = RecordingMailer()
    codec = TokenCodec(settings)
    hasher = CredentialHasher(codec)
    sessions = SessionIssuer(codec, accounts)
    limiter = RateLimiter(settings.magic_link_rate_limit_max, settings.magic_link_rate_limit_window_seconds)
    reset_limiter = RateLimiter(settings.magic_link_rate_limit_max, settings.magic_link_rate_limit_window_seconds)
    return SimpleNamespace(
        settings=settings,
        accounts=accounts,
        secrets=secrets,
        clock=clock,
        mailer=mailer,
        codec=codec,
        hasher=hasher,
        sessions=sessions,
        limiter=limiter,
        magic_links=MagicLinkService(settings, accounts, secrets, hasher, limiter, mailer, sessions, clock=clock),
        otp=OTPService(settings, accounts, secrets, hasher, mailer, sessions, clock=clock),
        reset_limiter=reset_limiter,
        passwords=PasswordService(
            settings,
            accounts,
            secrets,
            hasher,
            PasswordHasher(settings.password_hash_rounds),
            reset_limiter,
            mailer,
            sessions,
            clock=clock,
        ),
        google=GoogleOAuthService(settings, accounts, sessions, GoogleOAuthProvider(settings, transport=transport)),
    )


# ---------------------------------------------------------------------------
# Google provider stub
# ---------------------------------------------------------------------------


GOOGLE_PROFILE = {
    "id": "1234567890",
    "email": "oauth.user@example.com",
    "verified_email": True,
    "given_name": "Grace",
    "family_name": "Hopper",
    "picture": "https://lh3.googleusercontent.com/a/photo.jpg",
}


def google_transport(profile: dict | None = None, token_status: int = 200) -> httpx.MockTransport:
    """MockTransport answering Google's token and userinfo endpoints."""
    body = GOOGLE_PROFILE if profile is None else profile

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant", "error_description": "Bad code"})
            return httpx.Response(
                200,
                json={
                    "access_token": "ya29.provider-access",
                    "expires_in": 3599,
                    "token_type": "Bearer",
                    "scope": "openid email profile",
                    "id_token": "header.payload.signature",
                },
            )
        if request.url.host == "www.googleapis.com":
            assert request.headers["Authorization"] == "Bearer ya29.provider-access"
            return httpx.Response(200, json=body)
        return httpx.Response(404)

    return httpx.MockTransport(handler)




# ---------------------------------------------------------------------------
# Lifespan stub
# ---------------------------------------------------------------------------


def patch_lifespan(accounts: AccountStore, secrets: SecretStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores, the recording mailer and the Google stub into
    app.state so routes run against isolated in-memory state.
    """
    from api.main import init_services

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(
            app,
            app.state.settings,
            accounts=accounts,
            secrets=secrets,
            mailer=mailer,
            oauth_transport=google_transport(),
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan
