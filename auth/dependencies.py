"""
auth/dependencies.py -- FastAPI Depends() gates for bearer tokens and API keys.

Two independent gates, composable per route:
  BearerAuth  -- Authorization header -> access token -> Principal.
  ApiKeyAuth  -- API key header -> stored key -> owner Principal.

A valid API key says nothing about bearer tokens and vice versa; a route can
depend on either, both, or neither.

Each gate is a callable class so one import covers the hard, soft and
skip-listed variants:
    require_bearer = BearerAuth()
    optional_bearer = BearerAuth(soft=True)
    service_key = ApiKeyAuth(skip=[("/api/v1/health", "GET")])

Hard mode raises an AuthError subclass (mapped to JSON by api/main.py).
Soft mode sets the result to None and lets the request through. Skip-listed
(path, method) pairs bypass the gate entirely; a method of None matches any.

The gates read their collaborators from request.app.state (codec, accounts),
populated by the application lifespan.

Layer rule: no imports from api/. This module may import fastapi because it
is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from fastapi import Depends, Request

from auth.errors import ForbiddenError, InvalidTokenError, UnauthorizedError
from auth.models import ApiKey, Principal
from auth.sessions import principal_from_claims, principal_from_user

logger = logging.getLogger("portcullis.auth.dependencies")

SkipRule = tuple[str, str | None]


def extract_bearer_token(header: str | None) -> str | None:
    """Pick the JWT out of an Authorization header.

    Proxies sometimes repeat the header, producing values such as
    "Bearer abc, Bearer x.y.z". Commas are dropped, the value is split on
    whitespace, and the last token following a "bearer" keyword that looks
    like a JWT (contains a ".") wins.
    """
    if not header:
        return None
    parts = header.replace(",", "").split()
    token = None
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "bearer" and "." in parts[i + 1]:
            token = parts[i + 1]
    return token


def _skipped(request: Request, skip: Iterable[SkipRule]) -> bool:
    return any(
        request.url.path == path and (method is None or request.method == method.upper()) for path, method in skip
    )


class BearerAuth:
    """Resolve the request Principal from a bearer access token."""

    def __init__(self, soft: bool = False, skip: Iterable[SkipRule] = ()) -> None:
        self.soft = soft
        self.skip = tuple(skip)

    def __call__(self, request: Request) -> Principal | None:
        request.state.principal = None
        if _skipped(request, self.skip):
            return None

        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None:
            if self.soft:
                return None
            raise UnauthorizedError("Authentication required.")

        try:
            claims = request.app.state.codec.verify_access_token(token)
            principal = principal_from_claims(claims)
        except InvalidTokenError:
            logger.debug("Bearer token rejected (prefix %s...)", token[:8])
            if self.soft:
                return None
            raise

        request.state.principal = principal
        return principal


class ApiKeyAuth:
    """Validate the API key header; optionally attach the key owner.

    Missing key -> 401 "API key is required"; an unknown key, or one whose
    owner is gone or deactivated -> 403 "Invalid API key" (or None for both
    in soft mode).
    """

    def __init__(
        self,
        soft: bool = False,
        skip: Iterable[SkipRule] = (),
        populate_owner: bool = True,
    ) -> None:
        self.soft = soft
        self.skip = tuple(skip)
        self.populate_owner = populate_owner

    def __call__(self, request: Request) -> ApiKey | None:
        request.state.api_key = None
        request.state.owner = None
        if _skipped(request, self.skip):
            return None

        header = request.app.state.settings.api_key_header
        raw_key = request.headers.get(header, "").strip()
        if not raw_key:
            if self.soft:
                return None
            raise UnauthorizedError("API key is required")

        accounts = request.app.state.accounts
        key = accounts.get_api_key_by_hash(request.app.state.codec.hash_api_key(raw_key))
        owner = accounts.get_by_id(key.user_id) if key is not None else None
        if key is None or owner is None or not owner.is_active:
            if key is None:
                logger.warning("Invalid API key presented (prefix %s...)", raw_key[:8])
            else:
                logger.warning("API key %s rejected: owner %s missing or inactive", key.id, key.user_id)
            if self.soft:
                return None
            raise ForbiddenError("Invalid API key")

        accounts.update_api_key_last_used(key.id)
        request.state.api_key = key
        if self.populate_owner:
            request.state.owner = principal_from_user(owner)
        return key


require_bearer = BearerAuth()


def require_admin(principal: Principal = Depends(require_bearer)) -> Principal:
    """Require a bearer token whose roles include "admin"."""
    if not principal.has_role("admin"):
        raise ForbiddenError("Admin access required.")
    return principal
