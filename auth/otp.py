"""
auth/otp.py -- Email verification and login by six-digit one-time code.

request_otp(email):
  normalize -> find (or, with OTP_AUTO_CREATE_ACCOUNTS, create) the account
  -> resend cooldown -> store hash of a fresh code, replacing any prior one
  -> email the raw code.
  An unknown email gets the generic success body and no code. If the email
  cannot be sent the stored code stays in place; the caller sees
  InternalError and may retry once the cooldown allows. (Magic links roll
  back instead; the two policies differ on purpose.)

verify_otp(email, code, should_login):
  no record -> "Invalid or expired code."; past expiry -> "Code has expired.";
  mismatch -> attempts += 1 and "Invalid code.". On a match the code is
  deleted and the account's email_verified flag is set.

Lockout: OTP_MAX_ATTEMPTS > 0 rejects verification once that many wrong
codes have been submitted, and drops the code. 0 (default) never locks.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.credentials import CredentialHasher, is_valid_email, normalize_email, resend_wait
from auth.errors import BadRequestError, InternalError, UnauthorizedError, ValidationError
from auth.mailer import EmailMessage, Mailer, render_template
from auth.models import User, VerificationResult
from auth.redirects import otp_verify_url
from auth.sessions import SessionIssuer
from auth.store import AccountStore, SecretStore
from core.config import Settings

logger = logging.getLogger("portcullis.auth.otp")

GENERIC_REQUEST_MESSAGE = "If an account exists, a code has been sent."
VERIFIED_MESSAGE = "Verification successful."
DEFAULT_ROLE = "user"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPService:
    def __init__(
        self,
        settings: Settings,
        accounts: AccountStore,
        secrets: SecretStore,
        hasher: CredentialHasher,
        mailer: Mailer,
        sessions: SessionIssuer,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._accounts = accounts
        self._secrets = secrets
        self._hasher = hasher
        self._mailer = mailer
        self._sessions = sessions
        self._clock = clock
        self._ttl = timedelta(seconds=settings.otp_ttl_seconds)
        self._cooldown = timedelta(seconds=settings.otp_resend_cooldown_seconds)

    async def request_otp(self, email: str | None) -> dict:
        """Issue a code for the account behind email.

        Raises ValidationError (bad email), BadRequestError (cooldown), or
        InternalError (send failed; the code remains stored).
        """
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email is required")
        if not is_valid_email(normalized):
            raise ValidationError("Please provide a valid email address")

        user = self._accounts.get_by_email(normalized)
        if user is None:
            if not self._settings.otp_auto_create_accounts:
                logger.warning("Code requested for non-existent account: %s", normalized)
                return {"success": True, "message": GENERIC_REQUEST_MESSAGE}
            user = self._create_account(normalized)

        now = self._clock()
        wait = resend_wait(self._secrets.get_otp(user.id), now, self._cooldown)
        if wait > timedelta(0):
            raise BadRequestError(
                f"Please wait {self._settings.otp_resend_cooldown_seconds} seconds before requesting a new code."
            )

        code = self._hasher.new_otp_code()
        self._secrets.replace_otp(self._hasher.build_otp(user.id, code, now, self._ttl))

        if not await self._dispatch(user, code):
            raise InternalError("Failed to send verification code. Please try again later.")

        logger.info("Verification code sent to user_id=%s", user.id)
        return {"success": True, "message": GENERIC_REQUEST_MESSAGE}

    def _create_account(self, email: str) -> User:
        user = User(email=email, roles=[DEFAULT_ROLE])
        user.id = self._accounts.create_user(user)
        logger.info("Created account %s on code request (user_id=%s)", email, user.id)
        return self._accounts.get_by_id(user.id) or user

    async def _dispatch(self, user: User, code: str) -> bool:
        body = render_template(
            "otp.html",
            app_name=self._settings.app_name,
            first_name=user.first_name,
            code=code,
            verify_url=otp_verify_url(self._settings, user.email, code),
            expires_minutes=math.ceil(self._settings.otp_ttl_seconds / 60),
        )
        message = EmailMessage(to=user.email, subject="Email Verification Code", html_body=body)
        try:
            result = await asyncio.wait_for(self._mailer.send(message), self._settings.email_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Verification email to %s timed out", user.email)
            return False
        if not result.success:
            logger.error("Verification email to %s rejected: %s", user.email, result.error)
        return result.success

    async def verify_otp(self, email: str | None, code: str | None, should_login: bool = False) -> VerificationResult:
        """Check a submitted code. Raises ValidationError or UnauthorizedError."""
        normalized = normalize_email(email)
        if not normalized or not code:
            raise ValidationError("Email and code are required")

        user = self._accounts.get_by_email(normalized)
        record = self._secrets.get_otp(user.id) if user is not None else None
        if user is None or record is None:
            raise UnauthorizedError("Invalid or expired code.")

        if record.is_expired(self._clock()):
            raise UnauthorizedError("Code has expired. Please request a new one.")

        max_attempts = self._settings.otp_max_attempts
        if max_attempts > 0 and record.attempts >= max_attempts:
            self._secrets.delete_otp(user.id)
            logger.warning("Code for user_id=%s locked after %d failed attempts", user.id, record.attempts)
            raise UnauthorizedError("Too many failed attempts. Please request a new code.")

        if not self._hasher.otp_matches(record, code):
            attempts = self._secrets.increment_otp_attempts(user.id)
            logger.info("Wrong code for user_id=%s (attempt %d)", user.id, attempts)
            raise UnauthorizedError("Invalid code.")

        self._secrets.delete_otp(user.id)
        self._accounts.update_user(user.id, email_verified=True)
        user.email_verified = True

        result = VerificationResult(user=user, message=VERIFIED_MESSAGE)
        if should_login:
            session = self._sessions.issue(user)
            result.access_token = session.access_token
            result.refresh_token = session.refresh_token
        logger.info("Code verified for user_id=%s (login=%s)", user.id, should_login)
        return result

    def cleanup_expired_codes(self) -> int:
        removed = self._secrets.purge_expired_otps(self._clock())
        logger.info("Cleaned up %d expired verification codes", removed)
        return removed
