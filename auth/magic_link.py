"""
auth/magic_link.py -- Passwordless login by emailed single-use link.

State machine per email: Requested -> (token issued) -> Used | Expired.

request_magic_link(email):
  normalize + validate -> identity rate limit -> account lookup.
  Unknown email: log a warning, return the same success body as a real send
  (anti-enumeration). Known email: store a hashed token (replacing any unused
  one), then email the raw token. A failed or timed-out send deletes the token
  again so no valid link exists that was never delivered.

verify_magic_link(raw_token):
  shortlist unused, unexpired records by lookup key -> constant-time compare
  -> load the account -> mark used -> issue tokens. The record is consumed
  before the session is issued; a crash in between costs the user a new
  link, never a replay.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.credentials import CredentialHasher, is_valid_email, normalize_email
from auth.errors import InternalError, RateLimitedError, UnauthorizedError, ValidationError
from auth.mailer import EmailMessage, Mailer, render_template
from auth.models import AuthResult
from auth.ratelimit import RateLimiter
from auth.redirects import magic_link_url
from auth.sessions import SessionIssuer
from auth.store import AccountStore, SecretStore
from core.config import Settings

logger = logging.getLogger("portcullis.auth.magic_link")

REQUEST_SUCCESS_MESSAGE = "If an account with this email exists, a magic link has been sent."
INVALID_LINK_MESSAGE = "This magic link has expired or is invalid. Please request a new one."
SEND_FAILED_MESSAGE = "Failed to send magic link email. Please try again later."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MagicLinkService:
    """Issues and redeems magic links.

    clock returns the current aware UTC datetime; tests pass a controllable
    one to step past the TTL.
    """

    def __init__(
        self,
        settings: Settings,
        accounts: AccountStore,
        secrets: SecretStore,
        hasher: CredentialHasher,
        limiter: RateLimiter,
        mailer: Mailer,
        sessions: SessionIssuer,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._accounts = accounts
        self._secrets = secrets
        self._hasher = hasher
        self._limiter = limiter
        self._mailer = mailer
        self._sessions = sessions
        self._clock = clock
        self._ttl = timedelta(seconds=settings.magic_link_ttl_seconds)

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request_magic_link(self, email: str | None) -> dict:
        """Send a magic link if the account exists. Same response either way.

        Raises ValidationError, RateLimitedError, or InternalError (send failed).
        """
        if not email or not email.strip():
            raise ValidationError("Email address is required")
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise ValidationError("Please provide a valid email address")

        if not self._limiter.allow(normalized):
            wait = self._limiter.remaining_cooldown(normalized)
            minutes = self._limiter.retry_after_minutes(normalized)
            logger.warning("Magic link rate limit exceeded for %s (retry in %d min)", normalized, minutes)
            raise RateLimitedError(
                f"Too many requests. Please try again in {minutes} minutes.",
                retry_after=math.ceil(wait.total_seconds()),
            )

        user = self._accounts.get_by_email(normalized)
        if user is None:
            logger.warning("Magic link requested for non-existent account: %s", normalized)
            return {"success": True, "message": REQUEST_SUCCESS_MESSAGE}

        raw_token = self._hasher.new_magic_link_secret()
        record = self._hasher.build_magic_link(normalized, raw_token, self._clock(), self._ttl)
        token_id = self._secrets.create_magic_link(record)

        if not await self._dispatch(normalized, raw_token, user.display_name):
            self._secrets.delete_magic_link(token_id)
            logger.error("Magic link email to %s failed; token %s removed", normalized, token_id)
            raise InternalError(SEND_FAILED_MESSAGE)

        logger.info("Magic link sent to %s (token %s)", normalized, token_id)
        return {"success": True, "message": REQUEST_SUCCESS_MESSAGE}

    async def _dispatch(self, email: str, raw_token: str, name: str | None) -> bool:
        link = magic_link_url(self._settings, raw_token)
        if link is None:
            logger.error("Cannot build magic link URL from APP_URL/FRONTEND_SUCCESS_URL")
            return False
        body = render_template(
            "magic_link.html",
            app_name=self._settings.app_name,
            first_name=name,
            link=link,
            expires_minutes=math.ceil(self._settings.magic_link_ttl_seconds / 60),
        )
        message = EmailMessage(to=email, subject=f"Sign in to {self._settings.app_name}", html_body=body)
        try:
            result = await asyncio.wait_for(self._mailer.send(message), self._settings.email_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Magic link email to %s timed out after %ss", email, self._settings.email_timeout_seconds)
            return False
        if not result.success:
            logger.error("Magic link email to %s rejected: %s", email, result.error)
        return result.success

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify_magic_link(self, raw_token: str | None) -> AuthResult:
        """Redeem a raw token for a session. Raises ValidationError or UnauthorizedError."""
        if not raw_token or not raw_token.strip():
            raise ValidationError("Magic link token is required")
        token = raw_token.strip()
        now = self._clock()

        candidates = self._secrets.find_active_magic_links(now, self._hasher.magic_link_lookup_key(token))
        record = self._hasher.match_magic_link(token, candidates, now)
        if record is None:
            logger.warning("Invalid or expired magic link token used: %s...", token[:8])
            raise UnauthorizedError(INVALID_LINK_MESSAGE)

        user = self._accounts.get_by_email(record.email)
        if user is None:
            logger.error("Magic link token %s found but account %s does not exist", record.id, record.email)
            raise UnauthorizedError("User account not found.")

        if not self._secrets.mark_magic_link_used(record.id, now):
            # A concurrent verification consumed it first.
            logger.warning("Magic link token %s already consumed", record.id)
            raise UnauthorizedError(INVALID_LINK_MESSAGE)

        result = self._sessions.issue(user)
        logger.info("Magic link login for user_id=%s (token %s)", user.id, record.id)
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired_tokens(self) -> int:
        """Delete expired and used token records. Returns the number removed."""
        removed = self._secrets.purge_magic_links(self._clock())
        logger.info("Cleaned up %d magic link tokens", removed)
        return removed
