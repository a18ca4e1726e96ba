"""
tests/conftest.py -- Shared test fixtures for Portcullis.

This module provides:
  - services: protocol services wired for unit tests (no HTTP)
  - fake_time: frozen time.time() for the rate-limit storage
  - api_client: TestClient over the real app with a patched lifespan

Builders and test doubles live in tests/support.py.

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core/api import so
get_settings() sees them (it is cached on first call).
"""

from __future__ import annotations

import os
import time
from collections.abc import Generator
from types import SimpleNamespace

# CRITICAL: Set these before any project import. DEBUG lets get_settings()
# auto-generate the signing secrets instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("AUTH_MODE", "hybrid")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("FRONTEND_SUCCESS_URL", "http://localhost:3000")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from tests.support import (
    RecordingMailer,
    build_services,
    create_account,
    make_settings,
    make_stores,
    patch_lifespan,
)

# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def services(settings: Settings) -> Generator[SimpleNamespace, None, None]:
    svc = build_services(settings)
    yield svc
    svc.accounts.close()
    svc.secrets.close()


@pytest.fixture
def fake_time(monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    """Freeze time.time() (used by the rate-limit storage); advance with .value."""
    state = SimpleNamespace(value=1_800_000_000.0)
    monkeypatch.setattr(time, "time", lambda: state.value)
    return state


# ---------------------------------------------------------------------------
# App fixture
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with client, mailer, stores, and admin/user bearer tokens.

    The TestClient uses the real FastAPI app with a patched lifespan and
    follow_redirects=False so tests can assert on Location headers.
    """
    from api.main import app
    from auth.sessions import access_claims

    accounts, secrets = make_stores()
    mailer = RecordingMailer()
    admin = create_account(accounts, "admin@example.com", roles=["user", "admin"], email_verified=True)
    member = create_account(accounts, "member@example.com", roles=["user"])

    codec = TokenCodec(get_settings())
    app.router.lifespan_context = patch_lifespan(accounts, secrets, mailer)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield SimpleNamespace(
            client=client,
            app=app,
            mailer=mailer,
            accounts=accounts,
            secrets=secrets,
            admin=admin,
            member=member,
            admin_token=codec.issue_access_token(access_claims(admin)),
            member_token=codec.issue_access_token(access_claims(member)),
        )

    accounts.close()
    secrets.close()
