"""
auth/sessions.py -- Turning an authenticated account into a token pair.

Every successful login path (magic link, one-time code, Google) ends in
SessionIssuer.issue(); POST /auth/token/refresh goes through refresh().
Sessions are stateless: there is no revocation list, so expiry and secret
rotation are the only ways a token stops working.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from auth.errors import InvalidTokenError, UnauthorizedError
from auth.models import AuthResult, Principal, User
from auth.store import AccountStore
from auth.tokens import TokenCodec

logger = logging.getLogger("portcullis.auth.sessions")

INVALID_REFRESH_MESSAGE = "Invalid or expired refresh token"
INACTIVE_ACCOUNT_MESSAGE = "This account has been deactivated."


def access_claims(user: User) -> dict[str, Any]:
    """Claims embedded in an access token for user."""
    return {
        "sub": str(user.id),
        "email": user.email,
        "roles": list(user.roles),
        "email_verified": user.email_verified,
    }


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    """Build the request Principal from verified access-token claims."""
    try:
        subject_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise InvalidTokenError() from None
    return Principal(
        subject_id=subject_id,
        email=claims.get("email", ""),
        roles=list(claims.get("roles") or []),
        email_verified=bool(claims.get("email_verified", False)),
        issued_at=_timestamp(claims.get("iat")),
        expires_at=_timestamp(claims.get("exp")),
    )


def principal_from_user(user: User) -> Principal:
    return Principal(
        subject_id=user.id,
        email=user.email,
        roles=list(user.roles),
        email_verified=user.email_verified,
    )


def _timestamp(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class SessionIssuer:
    """Issues access/refresh pairs and refreshes access tokens."""

    def __init__(self, codec: TokenCodec, accounts: AccountStore) -> None:
        self._codec = codec
        self._accounts = accounts

    def issue(self, user: User) -> AuthResult:
        """Sign a token pair for user and stamp last_login.

        Raises UnauthorizedError for a deactivated account, whichever login
        path brought it here.
        """
        if not user.is_active:
            logger.warning("Login refused for inactive account user_id=%s", user.id)
            raise UnauthorizedError(INACTIVE_ACCOUNT_MESSAGE)
        access = self._codec.issue_access_token(access_claims(user))
        refresh = self._codec.issue_refresh_token(user.id)
        self._accounts.update_last_login(user.id)
        logger.info("Session issued for user_id=%s", user.id)
        return AuthResult(access_token=access, refresh_token=refresh, user=user)

    def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a valid refresh token for a new access token.

        The refresh token itself is returned unchanged; it keeps its original
        expiry. A deleted or deactivated account cannot refresh.
        """
        try:
            claims = self._codec.verify_refresh_token(refresh_token)
        except InvalidTokenError:
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE) from None
        try:
            user_id = int(claims["sub"])
        except ValueError:
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE) from None
        user = self._accounts.get_by_id(user_id)
        if user is None or not user.is_active:
            logger.warning("Refresh rejected: account %s missing or inactive", user_id)
            raise UnauthorizedError(INVALID_REFRESH_MESSAGE)
        access = self._codec.issue_access_token(access_claims(user))
        return AuthResult(access_token=access, refresh_token=refresh_token, user=user)
