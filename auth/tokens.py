"""
auth/tokens.py -- JWT issuance/verification, random secrets, and API key hashing.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry sub, email, roles and
       email_verified; refresh tokens carry only sub. The two kinds are
       signed with distinct secrets and tagged with a "type" claim, so a
       refresh token never verifies as an access token even in legacy
       single-secret mode [S1].

  Failures: every verification failure (bad signature, malformed, expired,
       wrong type, missing claims) raises the same InvalidTokenError. The
       reason is logged at DEBUG only -- callers never learn which check
       failed.

  Random secrets: secrets.token_hex gives hex strings from the OS CSPRNG.
       32 bytes (256 bits) for magic links and API keys; brute force is
       computationally infeasible.

  API keys: stored as HMAC-SHA256(SECRET_KEY, raw_key) so lookup is O(1)
       and a leaked table is useless without SECRET_KEY. bcrypt's intentional
       slowness is unnecessary for 256-bit secrets.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidTokenError
from core.config import Settings

logger = logging.getLogger("portcullis.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# Claims the codec adds itself; stripped when comparing round-tripped claims.
RESERVED_CLAIMS = frozenset({"iat", "exp", "type"})


# ---------------------------------------------------------------------------
# Random secrets and keyed hashes
# ---------------------------------------------------------------------------


def random_secret(byte_length: int = 32) -> str:
    """Return byte_length random bytes from the OS CSPRNG as a hex string."""
    if byte_length <= 0:
        raise ValueError("byte_length must be positive")
    return secrets.token_hex(byte_length)


def hmac_hex(key: str, message: str) -> str:
    """Return HMAC-SHA256(key, message) as a hex string."""
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking where they first differ."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Signs and verifies access/refresh JWTs and derives API key hashes.

    Usage:
        codec = TokenCodec(get_settings())
        token = codec.issue_access_token({"sub": "42", "email": "a@b.co", "roles": ["user"]})
        claims = codec.verify_access_token(token)
    """

    def __init__(self, settings: Settings) -> None:
        self._access_secret = settings.access_token_secret
        self._refresh_secret = settings.refresh_token_secret
        self._server_secret = settings.secret_key
        self.access_ttl = timedelta(seconds=settings.access_token_expire_seconds)
        self.refresh_ttl = timedelta(seconds=settings.refresh_token_expire_seconds)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, claims: dict[str, Any], expires_in: timedelta | None = None) -> str:
        """Sign claims plus iat/exp/type with the access secret.

        expires_in overrides the configured ACCESS_TOKEN_EXPIRE_SECONDS.
        """
        return self._encode(claims, ACCESS, self._access_secret, expires_in or self.access_ttl)

    def issue_refresh_token(self, subject_id: int | str, expires_in: timedelta | None = None) -> str:
        """Sign a minimal {sub} claim set with the refresh secret."""
        return self._encode({"sub": str(subject_id)}, REFRESH, self._refresh_secret, expires_in or self.refresh_ttl)

    def _encode(self, claims: dict[str, Any], token_type: str, secret: str, ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = {key: value for key, value in claims.items() if key not in RESERVED_CLAIMS}
        if "sub" in payload:
            payload["sub"] = str(payload["sub"])
        payload.update({"type": token_type, "iat": now, "exp": now + ttl})
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access_token(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid access token; raise InvalidTokenError otherwise."""
        return self._decode(token, ACCESS, self._access_secret)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid refresh token; raise InvalidTokenError otherwise."""
        return self._decode(token, REFRESH, self._refresh_secret)

    def _decode(self, token: str, token_type: str, secret: str) -> dict[str, Any]:
        if not token:
            raise InvalidTokenError()
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError:
            logger.debug("Rejected %s token: expired", token_type)
            raise InvalidTokenError() from None
        except JWTError as exc:
            logger.debug("Rejected %s token: %s", token_type, exc)
            raise InvalidTokenError() from None
        if payload.get("type") != token_type or not payload.get("sub"):
            logger.debug("Rejected %s token: wrong type or missing subject", token_type)
            raise InvalidTokenError()
        return payload

    # ------------------------------------------------------------------
    # Server-keyed hashes
    # ------------------------------------------------------------------

    def keyed_hash(self, value: str) -> str:
        """HMAC-SHA256(SECRET_KEY, value) -- for magic-link tokens and OTP codes."""
        return hmac_hex(self._server_secret, value)

    def generate_api_key(self) -> str:
        """Generate a new API key in the format: pk_<64 hex chars>."""
        return f"pk_{random_secret(32)}"

    def hash_api_key(self, raw_key: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, "api-key:" + raw_key) as a hex string.

        The domain prefix keeps API key hashes disjoint from magic-link and
        OTP hashes made with the same server secret.
        """
        return hmac_hex(self._server_secret, f"api-key:{raw_key}")
