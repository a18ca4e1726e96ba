"""
auth/credentials.py -- Hashing, comparison and expiry rules for one-time secrets.

Persistence lives in auth/store.py; this module owns the logic the store
must not: how a raw secret becomes a stored hash, how a candidate is
compared, and when a record stops being usable.

Magic-link tokens:
  The raw token is 32 random bytes (64 hex chars) and is never stored.
  token_hash = HMAC-SHA256(SECRET_KEY, "magic-link:" + raw).
  lookup_key = first 16 hex chars of HMAC-SHA256(SECRET_KEY, "magic-link-lookup:" + raw).

  lookup_key is deterministic but unpredictable without SECRET_KEY, so the
  store can index on it to shortlist candidates instead of scanning every
  outstanding token. The shortlist is still checked with a constant-time
  comparison of the full hash; the lookup key alone never authenticates.

Password reset tokens:
  32 random bytes like magic links. token_hash = HMAC-SHA256(SECRET_KEY,
  "password-reset:" + raw). The record is looked up by that hash directly;
  an index hit on a keyed hash of a 256-bit secret reveals nothing usable.

One-time codes:
  Six decimal digits from the CSPRNG. Stored as
  HMAC-SHA256(SECRET_KEY, "otp:<user_id>:" + code) -- a plain SHA-256 of a
  6-digit code is reversible by enumerating a million candidates, the key
  makes a leaked table useless on its own. Binding the user id means the
  same code for two users never yields the same hash.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta

from auth.models import MagicLinkToken, OneTimeCode, PasswordResetToken
from auth.tokens import TokenCodec, constant_time_equals, random_secret

MAGIC_LINK_TOKEN_BYTES = 32
PASSWORD_RESET_TOKEN_BYTES = 32
LOOKUP_KEY_LENGTH = 16
OTP_DIGITS = 6

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(email: str | None) -> str:
    """Lowercase and trim; None becomes the empty string."""
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_PATTERN.match(email))


class CredentialHasher:
    """Server-keyed hashing for magic-link tokens, reset tokens and one-time codes."""

    def __init__(self, codec: TokenCodec) -> None:
        self._codec = codec

    # ------------------------------------------------------------------
    # Magic-link tokens
    # ------------------------------------------------------------------

    @staticmethod
    def new_magic_link_secret() -> str:
        return random_secret(MAGIC_LINK_TOKEN_BYTES)

    def magic_link_hash(self, raw_token: str) -> str:
        return self._codec.keyed_hash(f"magic-link:{raw_token}")

    def magic_link_lookup_key(self, raw_token: str) -> str:
        return self._codec.keyed_hash(f"magic-link-lookup:{raw_token}")[:LOOKUP_KEY_LENGTH]

    def build_magic_link(self, email: str, raw_token: str, now: datetime, ttl: timedelta) -> MagicLinkToken:
        """Return an unsaved record for raw_token; the raw value is not kept."""
        return MagicLinkToken(
            email=email,
            token_hash=self.magic_link_hash(raw_token),
            lookup_key=self.magic_link_lookup_key(raw_token),
            expires_at=now + ttl,
            used=False,
            created_at=now,
        )

    def match_magic_link(
        self, raw_token: str, candidates: list[MagicLinkToken], now: datetime
    ) -> MagicLinkToken | None:
        """Return the usable candidate whose hash matches raw_token, else None.

        Every candidate is compared, even after a match, so the time taken
        depends on the candidate count and not on which record matched.
        """
        supplied = self.magic_link_hash(raw_token)
        found: MagicLinkToken | None = None
        for record in candidates:
            matched = constant_time_equals(supplied, record.token_hash)
            if matched and found is None and not record.used and not record.is_expired(now):
                found = record
        return found

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    @staticmethod
    def new_password_reset_secret() -> str:
        return random_secret(PASSWORD_RESET_TOKEN_BYTES)

    def password_reset_hash(self, raw_token: str) -> str:
        return self._codec.keyed_hash(f"password-reset:{raw_token}")

    def build_password_reset(self, user_id: int, raw_token: str, now: datetime, ttl: timedelta) -> PasswordResetToken:
        return PasswordResetToken(
            user_id=user_id,
            token_hash=self.password_reset_hash(raw_token),
            expires_at=now + ttl,
            used=False,
            created_at=now,
        )

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    @staticmethod
    def new_otp_code() -> str:
        """Six digits, leading zeros kept."""
        return f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"

    def otp_hash(self, user_id: int, code: str) -> str:
        return self._codec.keyed_hash(f"otp:{user_id}:{code}")

    def build_otp(self, user_id: int, code: str, now: datetime, ttl: timedelta) -> OneTimeCode:
        return OneTimeCode(
            user_id=user_id,
            code_hash=self.otp_hash(user_id, code),
            expires_at=now + ttl,
            last_sent_at=now,
            attempts=0,
            created_at=now,
        )

    def otp_matches(self, record: OneTimeCode, code: str) -> bool:
        return constant_time_equals(self.otp_hash(record.user_id, code.strip()), record.code_hash)


def resend_wait(record: OneTimeCode | None, now: datetime, cooldown: timedelta) -> timedelta:
    """Time left before another code may be sent; zero when allowed."""
    if record is None:
        return timedelta(0)
    remaining = record.last_sent_at + cooldown - now
    return remaining if remaining > timedelta(0) else timedelta(0)
