"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial
predicates). Stores map rows to these; services and routes do the work.

All datetimes are timezone-aware UTC.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """An account that can authenticate.

    roles holds role names ("user", "admin"), resolved by the store from the
    user_roles join table. hashed_password is a bcrypt hash, or None for
    accounts that only sign in by magic link, one-time code or Google.
    """

    email: str
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    picture: str | None = None
    email_verified: bool = False
    roles: list[str] = field(default_factory=list)
    is_active: bool = True
    hashed_password: str | None = None
    created_at: str | None = None
    last_login: str | None = None

    @property
    def display_name(self) -> str | None:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or None


@dataclass
class Role:
    name: str
    id: int | None = None
    description: str | None = None


@dataclass
class ApiKey:
    """A long-lived credential for service-to-service callers.

    key_hash is HMAC-SHA256(SECRET_KEY, raw_key). The raw key is returned
    once at creation and never persisted. key_prefix (first 12 chars) is
    kept for display so admins can tell keys apart.
    """

    user_id: int
    key_hash: str
    key_prefix: str
    name: str = "default"
    id: int | None = None
    created_at: str | None = None
    last_used: str | None = None


@dataclass
class MagicLinkToken:
    """A single-use login link record.

    token_hash is HMAC-SHA256 of the raw secret; lookup_key is a short
    HMAC-derived prefix used only to narrow the candidate set before the
    constant-time comparison of token_hash.
    """

    email: str
    token_hash: str
    lookup_key: str
    expires_at: datetime
    used: bool = False
    id: int | None = None
    created_at: datetime | None = None
    used_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PasswordResetToken:
    """A single-use password reset record.

    token_hash is a keyed hash of the raw secret, which is deterministic, so
    the record is found by direct lookup. At most one unused token per user.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    used: bool = False
    id: int | None = None
    created_at: datetime | None = None
    used_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OneTimeCode:
    """The current one-time code for an account. At most one per user."""

    user_id: int
    code_hash: str
    expires_at: datetime
    last_sent_at: datetime
    attempts: int = 0
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class Principal:
    """The authenticated actor for one request. Never persisted."""

    subject_id: int
    email: str
    roles: list[str] = field(default_factory=list)
    email_verified: bool = False
    issued_at: datetime | None = None
    expires_at: datetime | None = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class AuthResult:
    """Outcome of a successful login: a token pair plus the account."""

    access_token: str
    refresh_token: str
    user: User


@dataclass
class VerificationResult:
    """Outcome of a successful one-time code check.

    Tokens are present only when the caller asked to log in.
    """

    user: User
    message: str
    success: bool = True
    access_token: str | None = None
    refresh_token: str | None = None
