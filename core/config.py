"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Portcullis happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Resolves the signing secrets after all
      fields are loaded. Dev mode generates missing secrets with a warning;
      production mode refuses to start without them.

Security notes:
  [M6] Any secret shorter than 32 chars is rejected outright. HMAC-SHA256 and
       JWT signing both rely on key entropy -- a short key weakens both.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [S1] Access and refresh tokens are signed with distinct secrets. JWT_SECRET
       is the legacy single-secret mode: it fills whichever of the two is
       unset, and the token "type" claim keeps the two kinds apart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("portcullis.config")

AuthMode = Literal["graphql", "rest", "hybrid"]
_AUTH_MODES = ("graphql", "rest", "hybrid")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'portcullis.db'}"

# Route prefix for the REST auth endpoints; used to build callback URLs.
API_PREFIX = "/api/v1"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    app_name: str = "Portcullis"
    database_url: str = _DEFAULT_DB_URL
    # Server secret for HMACs (OAuth state, magic-link/OTP/API-key hashes).
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Bearer tokens
    # ------------------------------------------------------------------

    access_token_secret: str = ""
    refresh_token_secret: str = ""
    jwt_secret: str = ""  # legacy single-secret mode [S1]
    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Transport / redirects
    # ------------------------------------------------------------------

    auth_mode: AuthMode = "hybrid"
    app_url: str = "http://localhost:8000"
    frontend_success_url: str = "http://localhost:3000"
    frontend_error_url: str = ""
    include_user_data_in_redirect: bool = False
    allowed_redirect_domains: str = ""
    api_key_header: str = "X-API-Key"
    cors_allowed_origins: str = "http://localhost:3000"
    allowed_hosts: str = "*"

    # ------------------------------------------------------------------
    # Magic link
    # ------------------------------------------------------------------

    magic_link_ttl_seconds: int = 15 * 60
    magic_link_rate_limit_max: int = 3
    magic_link_rate_limit_window_seconds: int = 15 * 60
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    otp_ttl_seconds: int = 10 * 60
    otp_resend_cooldown_seconds: int = 60
    # 0 disables the lockout; the attempt counter is tracked regardless.
    otp_max_attempts: int = 0
    otp_auto_create_accounts: bool = False

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    password_min_length: int = 6
    # bcrypt work factor, 4-31.
    password_hash_rounds: int = 12
    password_reset_ttl_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Google OAuth (empty string means the provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    google_oauth_redirect_uri: str = ""
    oauth_http_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    mail_provider: Literal["log", "smtp"] = "log"
    mail_from: str = "no-reply@localhost"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Per-IP rate limiting (slowapi)
    # ------------------------------------------------------------------

    auth_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("auth_mode", mode="before")
    @classmethod
    def normalize_auth_mode(cls, value: object) -> str:
        """Lowercase AUTH_MODE; unknown values fall back to graphql with a warning."""
        mode = str(value or "").strip().lower()
        if mode not in _AUTH_MODES:
            logger.warning(
                "Invalid AUTH_MODE %r. Falling back to 'graphql'. Valid options: graphql, rest, hybrid",
                value,
            )
            return "graphql"
        return mode

    @model_validator(mode="after")
    def resolve_secrets(self) -> "Settings":
        """Enforce the signing secret policy [M6][M7][S1].

        Legacy mode: JWT_SECRET fills an unset access or refresh secret.
        Dev mode (DEBUG=true): any secret still missing is generated, with a
            warning. Tokens will not survive a restart.
        Production mode: a missing secret refuses to start.
        """
        legacy = bool(self.jwt_secret)
        if legacy:
            if not self.access_token_secret:
                self.access_token_secret = self.jwt_secret
            if not self.refresh_token_secret:
                self.refresh_token_secret = self.jwt_secret
            logger.warning("JWT_SECRET is set: running in legacy single-secret mode.")

        for name in ("secret_key", "access_token_secret", "refresh_token_secret"):
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, name, secrets.token_hex(32))
                logger.warning("WARNING: Using auto-generated %s. Tokens will not persist across restarts.", name.upper())
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")

        if not legacy and self.access_token_secret == self.refresh_token_secret:
            logger.warning("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET are identical.")

        if self.rest_enabled and not self.google_configured:
            logger.warning("Google OAuth credentials are not configured. Google OAuth will not work.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def rest_enabled(self) -> bool:
        return self.auth_mode in ("rest", "hybrid")

    @property
    def graphql_enabled(self) -> bool:
        return self.auth_mode in ("graphql", "hybrid")

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def allowed_redirect_domain_list(self) -> list[str]:
        return [d.strip() for d in self.allowed_redirect_domains.split(",") if d.strip()]

    @property
    def error_redirect_base(self) -> str:
        return self.frontend_error_url or f"{self.frontend_success_url.rstrip('/')}/login?error=auth_failed"

    @property
    def google_redirect_uri(self) -> str:
        """Configured redirect URI, or the callback route for the current mode."""
        if self.google_oauth_redirect_uri:
            return self.google_oauth_redirect_uri
        base = self.app_url.rstrip("/")
        if self.rest_enabled:
            return f"{base}{API_PREFIX}/auth/google/callback"
        return f"{base}{API_PREFIX}/auth/google"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly. Services take a Settings instance in their constructor, so tests
    can build their own without touching the cache.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
