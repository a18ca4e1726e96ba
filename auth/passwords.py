"""
auth/passwords.py -- Password registration, login and emailed reset.

Security design decisions:
  Hashing: bcrypt directly (no passlib wrapper). The work factor comes from
       PASSWORD_HASH_ROUNDS. bcrypt only reads the first 72 bytes of its
       input, so longer passwords are rejected up front instead of being
       silently truncated.

  Login timing [C1]: login() always runs one bcrypt comparison. Unknown
       emails and passwordless accounts are checked against a dummy hash, so
       response time does not reveal whether an account exists or has a
       password. Every failure, including a deactivated account, gets the
       same "Invalid email or password" message.

  Reset tokens: 32 random bytes, stored only as a keyed hash with a
       PASSWORD_RESET_TTL_SECONDS lifetime, single use (conditional UPDATE),
       one unused token per account. Requesting a reset answers the same way
       whether or not the email belongs to a password account. A failed or
       timed-out send deletes the token again, as for magic links.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.credentials import CredentialHasher, is_valid_email, normalize_email
from auth.errors import BadRequestError, InternalError, RateLimitedError, UnauthorizedError, ValidationError
from auth.mailer import EmailMessage, Mailer, render_template
from auth.models import AuthResult, User
from auth.ratelimit import RateLimiter
from auth.redirects import login_url, password_reset_url
from auth.sessions import SessionIssuer
from auth.store import AccountStore, SecretStore
from core.config import Settings

logger = logging.getLogger("portcullis.auth.passwords")

BCRYPT_MAX_BYTES = 72
DEFAULT_ROLE = "user"

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
RESET_REQUEST_MESSAGE = "If an account with this email exists, a password reset link has been sent."
INVALID_RESET_MESSAGE = "This password reset link has expired or is invalid. Please request a new one."
RESET_SUCCESS_MESSAGE = "Your password has been reset. You can now log in with the new password."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


class PasswordHasher:
    """bcrypt hashing with a configurable work factor."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash: str | None = None

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """True if plain matches hashed. Malformed hashes and oversize input never match."""
        encoded = plain.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
        except ValueError:
            return False

    def burn(self, plain: str) -> None:
        """Spend one comparison's worth of time against a dummy hash [C1]."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("portcullis_timing_dummy")
        self.verify(plain, self._dummy_hash)


def check_password_policy(password: str | None, min_length: int) -> str:
    """Return password if acceptable; raise ValidationError otherwise."""
    if not password:
        raise ValidationError("Password is required")
    if len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")
    return password


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PasswordService:
    """Registers password accounts, logs them in, and runs the reset flow."""

    def __init__(
        self,
        settings: Settings,
        accounts: AccountStore,
        secrets: SecretStore,
        hasher: CredentialHasher,
        passwords: PasswordHasher,
        limiter: RateLimiter,
        mailer: Mailer,
        sessions: SessionIssuer,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._accounts = accounts
        self._secrets = secrets
        self._hasher = hasher
        self._passwords = passwords
        self._limiter = limiter
        self._mailer = mailer
        self._sessions = sessions
        self._clock = clock
        self._reset_ttl = timedelta(seconds=settings.password_reset_ttl_seconds)

    def _email(self, email: str | None) -> str:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email is required")
        if not is_valid_email(normalized):
            raise ValidationError("Please provide a valid email address")
        return normalized

    # ------------------------------------------------------------------
    # Register / login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str | None,
        password: str | None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Create a password account with the default role. No session is issued."""
        normalized = self._email(email)
        check_password_policy(password, self._settings.password_min_length)
        user = User(
            email=normalized,
            first_name=(first_name or "").strip() or None,
            last_name=(last_name or "").strip() or None,
            roles=[DEFAULT_ROLE],
            hashed_password=self._passwords.hash(password),
        )
        try:
            user_id = self._accounts.create_user(user)
        except IntegrityError:
            raise BadRequestError("Email already in use", code="email_in_use") from None
        logger.info("Registered password account user_id=%s", user_id)
        return self._accounts.get_by_id(user_id)

    def login(self, email: str | None, password: str | None) -> AuthResult:
        """Check email and password and issue a session."""
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = self._accounts.get_by_email(normalize_email(email))
        if user is None or user.hashed_password is None:
            self._passwords.burn(password)
            logger.warning("Password login failed: no password account for %s", normalize_email(email))
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)
        if not self._passwords.verify(password, user.hashed_password):
            logger.warning("Password login failed: wrong password for user_id=%s", user.id)
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)
        if not user.is_active:
            logger.warning("Password login refused for inactive user_id=%s", user.id)
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)
        result = self._sessions.issue(user)
        logger.info("Password login for user_id=%s", user.id)
        return result

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str | None) -> dict:
        """Email a reset link to a password account. Same response either way.

        Raises ValidationError, RateLimitedError, or InternalError (send failed).
        """
        normalized = self._email(email)
        if not self._limiter.allow(normalized):
            wait = self._limiter.remaining_cooldown(normalized)
            minutes = self._limiter.retry_after_minutes(normalized)
            logger.warning("Password reset rate limit exceeded for %s", normalized)
            raise RateLimitedError(
                f"Too many requests. Please try again in {minutes} minutes.",
                retry_after=math.ceil(wait.total_seconds()),
            )

        user = self._accounts.get_by_email(normalized)
        if user is None or user.hashed_password is None or not user.is_active:
            logger.warning("Password reset requested for %s: no active password account", normalized)
            return {"success": True, "message": RESET_REQUEST_MESSAGE}

        raw_token = self._hasher.new_password_reset_secret()
        now = self._clock()
        token_id = self._secrets.create_password_reset(
            self._hasher.build_password_reset(user.id, raw_token, now, self._reset_ttl)
        )
        if not await self._send_reset(user, raw_token):
            self._secrets.delete_password_reset(token_id)
            logger.error("Password reset email to %s failed; token %s removed", normalized, token_id)
            raise InternalError("Failed to send password reset email. Please try again later.")

        logger.info("Password reset link sent to user_id=%s (token %s)", user.id, token_id)
        return {"success": True, "message": RESET_REQUEST_MESSAGE}

    async def reset_password(self, raw_token: str | None, new_password: str | None) -> dict:
        """Set a new password from a reset token. Raises ValidationError or UnauthorizedError."""
        if not raw_token or not raw_token.strip():
            raise ValidationError("Reset token is required")
        check_password_policy(new_password, self._settings.password_min_length)
        token = raw_token.strip()
        now = self._clock()

        record = self._secrets.get_password_reset_by_hash(self._hasher.password_reset_hash(token))
        if record is None or record.used or record.is_expired(now):
            logger.warning("Invalid or expired password reset token used: %s...", token[:8])
            raise UnauthorizedError(INVALID_RESET_MESSAGE)

        user = self._accounts.get_by_id(record.user_id)
        if user is None or not user.is_active:
            logger.error("Password reset token %s points at missing or inactive user %s", record.id, record.user_id)
            raise UnauthorizedError(INVALID_RESET_MESSAGE)

        if not self._secrets.mark_password_reset_used(record.id, now):
            logger.warning("Password reset token %s already consumed", record.id)
            raise UnauthorizedError(INVALID_RESET_MESSAGE)

        self._accounts.update_user(user.id, hashed_password=self._passwords.hash(new_password))
        logger.info("Password reset for user_id=%s (token %s)", user.id, record.id)
        await self._send_changed_notice(user)
        return {"success": True, "message": RESET_SUCCESS_MESSAGE}

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    async def _deliver(self, message: EmailMessage) -> bool:
        try:
            result = await asyncio.wait_for(self._mailer.send(message), self._settings.email_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Email to %s timed out after %ss", message.to, self._settings.email_timeout_seconds)
            return False
        if not result.success:
            logger.error("Email to %s rejected: %s", message.to, result.error)
        return result.success

    async def _send_reset(self, user: User, raw_token: str) -> bool:
        link = password_reset_url(self._settings, raw_token)
        if link is None:
            logger.error("Cannot build password reset URL from FRONTEND_SUCCESS_URL")
            return False
        body = render_template(
            "password_reset.html",
            app_name=self._settings.app_name,
            first_name=user.first_name,
            link=link,
            expires_minutes=math.ceil(self._settings.password_reset_ttl_seconds / 60),
        )
        subject = f"{self._settings.app_name} - Password Reset Request"
        return await self._deliver(EmailMessage(to=user.email, subject=subject, html_body=body))

    async def _send_changed_notice(self, user: User) -> None:
        """Tell the owner the password changed. The reset stands even if this send fails."""
        body = render_template(
            "password_changed.html",
            app_name=self._settings.app_name,
            first_name=user.first_name,
            login_link=login_url(self._settings),
        )
        subject = f"{self._settings.app_name} - Password Changed"
        if not await self._deliver(EmailMessage(to=user.email, subject=subject, html_body=body)):
            logger.warning("Password change notice for user_id=%s was not delivered", user.id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired_tokens(self) -> int:
        """Delete expired and used reset tokens. Returns the number removed."""
        removed = self._secrets.purge_password_resets(self._clock())
        logger.info("Cleaned up %d password reset tokens", removed)
        return removed
