"""
auth/oauth.py -- Google OAuth 2.0 login: signed state, code exchange, account upsert.

Flow:
  initiate()  -> random nonce, signed as nonce + "." + HMAC-SHA256(SECRET_KEY, nonce),
                 embedded in the Google authorization URL. Nothing is stored.
  callback()  -> provider error? -> code and state present? -> state signature
                 (constant time) -> code exchange -> userinfo -> upsert -> tokens.

Security notes:
  [C1] CSRF: the state carries its own HMAC, so forging one requires
       SECRET_KEY. States are not persisted; replay is bounded to the
       network-visible callback window, and the authorization code Google
       issues is itself single use.

  [C3] The HTTP client is authlib's AsyncOAuth2Client (an httpx.AsyncClient)
       with a fixed timeout; a timeout or transport failure is an
       InternalError (retryable), never a hang. A provider-reported error
       during the exchange is a BadRequestError.

  The profile merge never downgrades: email_verified only moves to True,
  an existing picture is never replaced, roles are filled only when empty.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

import httpx
from authlib.integrations.base_client import OAuthError as ProviderOAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from auth.errors import BadRequestError, InternalError, OAuthError
from auth.models import AuthResult, User
from auth.sessions import SessionIssuer
from auth.store import AccountStore
from auth.tokens import constant_time_equals, hmac_hex, random_secret
from core.config import Settings

logger = logging.getLogger("portcullis.auth.oauth")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"
GOOGLE_SCOPE = "openid email profile"

STATE_NONCE_BYTES = 32
DEFAULT_ROLE = "user"


# ---------------------------------------------------------------------------
# State signing [C1]
# ---------------------------------------------------------------------------


def sign_state(nonce: str, secret: str) -> str:
    return f"{nonce}.{hmac_hex(secret, nonce)}"


def verify_state(signed_state: str, secret: str) -> str | None:
    """Return the nonce if the signature is valid, else None.

    Splits on the last "." so the signature is always the final segment.
    """
    if not signed_state or "." not in signed_state:
        return None
    nonce, signature = signed_state.rsplit(".", 1)
    if not nonce or not signature:
        return None
    if not constant_time_equals(hmac_hex(secret, nonce), signature):
        return None
    return nonce


# ---------------------------------------------------------------------------
# Profile merge
# ---------------------------------------------------------------------------


@dataclass
class OAuthProfile:
    email: str
    first_name: str | None = None
    last_name: str | None = None
    picture: str | None = None
    email_verified: bool = False

    @classmethod
    def from_google(cls, data: dict) -> "OAuthProfile | None":
        """Parse a Google userinfo body. Returns None when there is no email."""
        email = (data.get("email") or "").strip().lower()
        if not email:
            return None
        verified = data.get("verified_email", data.get("email_verified", False))
        return cls(
            email=email,
            first_name=data.get("given_name"),
            last_name=data.get("family_name"),
            picture=data.get("picture"),
            email_verified=bool(verified),
        )


def merge_profile(existing: User | None, incoming: OAuthProfile, default_roles: list[str]) -> dict:
    """Fields to write for incoming against the stored account.

    With no existing account this is the full set of creation fields.
    Otherwise only gaps are filled: verification upgrades, a picture where
    there was none, and default roles where the account has none. Names are
    never touched on an existing account. An empty dict means no write.
    """
    if existing is None:
        return {
            "email": incoming.email,
            "first_name": incoming.first_name,
            "last_name": incoming.last_name,
            "picture": incoming.picture,
            "email_verified": incoming.email_verified,
            "roles": list(default_roles),
        }
    updates: dict = {}
    if incoming.email_verified and not existing.email_verified:
        updates["email_verified"] = True
    if incoming.picture and not existing.picture:
        updates["picture"] = incoming.picture
    if not existing.roles and default_roles:
        updates["roles"] = list(default_roles)
    return updates


# ---------------------------------------------------------------------------
# Provider client [C3]
# ---------------------------------------------------------------------------


class GoogleOAuthProvider:
    """Talks to Google's authorization, token and userinfo endpoints.

    transport is passed straight to httpx; tests supply an httpx.MockTransport.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client_id = settings.google_client_id
        self._client_secret = settings.google_client_secret
        self.redirect_uri = settings.google_redirect_uri
        self._timeout = settings.oauth_http_timeout_seconds
        self._transport = transport

    def _client(self) -> AsyncOAuth2Client:
        kwargs: dict = {"timeout": self._timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=GOOGLE_SCOPE,
            redirect_uri=self.redirect_uri,
            **kwargs,
        )

    def authorization_url(self, state: str) -> str:
        client = self._client()
        url, _ = client.create_authorization_url(
            GOOGLE_AUTHORIZE_URL, state=state, access_type="offline", prompt="consent"
        )
        return url

    async def fetch_profile(self, code: str) -> OAuthProfile:
        """Exchange code for tokens and return the account's Google profile.

        Raises BadRequestError when Google rejects the code or returns no
        email, InternalError on timeouts and transport failures.
        """
        async with self._client() as client:
            try:
                await client.fetch_token(GOOGLE_TOKEN_URL, code=code)
            except ProviderOAuthError as exc:
                logger.error("Google token exchange rejected: %s", exc)
                raise BadRequestError(
                    "Failed to exchange authorization code for tokens", code="token_exchange_failed"
                ) from None
            except httpx.TimeoutException:
                logger.error("Google token exchange timed out after %ss", self._timeout)
                raise InternalError() from None
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("Google token exchange failed: %s", exc)
                raise InternalError() from None

            try:
                resp = await client.get(GOOGLE_USERINFO_URL)
            except httpx.TimeoutException:
                logger.error("Google userinfo request timed out after %ss", self._timeout)
                raise InternalError() from None
            except httpx.HTTPError as exc:
                logger.error("Google userinfo request failed: %s", exc)
                raise InternalError() from None

        profile = None
        if resp.status_code == 200:
            try:
                profile = OAuthProfile.from_google(resp.json())
            except ValueError:
                logger.error("Google userinfo returned a non-JSON body")
        if profile is None:
            logger.error("Google userinfo unusable (status %s)", resp.status_code)
            raise BadRequestError("Failed to get user information from Google", code="user_info_failed")
        return profile


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class GoogleOAuthService:
    def __init__(
        self,
        settings: Settings,
        accounts: AccountStore,
        sessions: SessionIssuer,
        provider: GoogleOAuthProvider | None = None,
    ) -> None:
        self._settings = settings
        self._accounts = accounts
        self._sessions = sessions
        self._provider = provider or GoogleOAuthProvider(settings)

    def _require_configured(self) -> None:
        if not self._settings.google_configured:
            logger.error("Google OAuth used but GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET are not set")
            raise InternalError("Google OAuth is not configured.")

    def initiate(self) -> str:
        """Return the Google authorization URL carrying a fresh signed state."""
        self._require_configured()
        nonce = random_secret(STATE_NONCE_BYTES)
        url = self._provider.authorization_url(sign_state(nonce, self._settings.secret_key))
        logger.info("Initiating Google OAuth (state %s..., redirect %s)", nonce[:8], self._provider.redirect_uri)
        return url

    async def callback(self, code: str | None, state: str | None, provider_error: str | None = None) -> AuthResult:
        """Complete the login Google redirected back with."""
        if provider_error:
            logger.error("Google returned an OAuth error: %s", provider_error)
            raise OAuthError(f"Google OAuth error: {provider_error}")
        if not code:
            raise BadRequestError("Authorization code is missing", code="missing_code")
        if not state:
            raise BadRequestError("State parameter is missing", code="missing_state")
        if verify_state(state, self._settings.secret_key) is None:
            logger.warning("Invalid OAuth state received: %s...", state[:8])
            raise BadRequestError("Invalid state parameter", code="invalid_state")

        self._require_configured()
        profile = await self._provider.fetch_profile(code)
        user = self.upsert(profile)
        result = self._sessions.issue(user)
        logger.info("Google login for user_id=%s", user.id)
        return result

    def upsert(self, profile: OAuthProfile) -> User:
        """Create or backfill the local account for a Google profile."""
        existing = self._accounts.get_by_email(profile.email)
        fields = merge_profile(existing, profile, [DEFAULT_ROLE])
        if existing is None:
            user_id = self._accounts.create_user(User(**fields))
            logger.info("Created account for %s from Google profile", profile.email)
            return self._accounts.get_by_id(user_id)
        if fields:
            self._accounts.update_user(existing.id, **fields)
            logger.info("Backfilled %s for user_id=%s from Google profile", sorted(fields), existing.id)
            return self._accounts.get_by_id(existing.id)
        return existing
