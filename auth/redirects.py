"""
auth/redirects.py -- Building user-facing redirect and email link URLs.

Every URL the auth flows send a browser to is built here, never by string
concatenation at the call site. [C2] Open-redirect prevention:
  - Only http and https bases are accepted.
  - When ALLOWED_REDIRECT_DOMAINS is set, the base host must match one entry
    exactly, or a "*.example.com" entry by suffix (which also matches the
    bare example.com).
  - Parameter values lose <>'"& and CR/LF and are trimmed; empty values are
    dropped.

A base URL that fails the checks yields None. Callers fall back to a JSON
response rather than redirecting anywhere unvetted.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from auth.models import User
from core.config import API_PREFIX, Settings

_UNSAFE_CHARS = re.compile(r"[<>'\"&]")
_LINE_BREAKS = re.compile(r"[\r\n]")


def _host_allowed(hostname: str, allowed_domains: list[str]) -> bool:
    for domain in allowed_domains:
        if domain.startswith("*."):
            base = domain[2:]
            if hostname == base or hostname.endswith("." + base):
                return True
        elif hostname == domain:
            return True
    return False


def sanitize_redirect_url(url: str, allowed_domains: list[str] | None = None) -> str | None:
    """Return url if it is an absolute http(s) URL on an allowed host, else None."""
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not hostname:
        return None
    if allowed_domains and not _host_allowed(hostname.lower(), allowed_domains):
        return None
    return urlunsplit(parts)


def sanitize_params(params: dict) -> dict[str, str]:
    """Strip injection characters from values and drop empty ones."""
    clean: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        text = _LINE_BREAKS.sub("", _UNSAFE_CHARS.sub("", str(value))).strip()
        if text:
            clean[key] = text
    return clean


def build_redirect_url(base_url: str, params: dict, allowed_domains: list[str] | None = None) -> str | None:
    """Merge sanitized params into the query of a vetted base URL.

    Existing query parameters on base_url are kept; a param with the same
    name is overwritten.
    """
    safe_base = sanitize_redirect_url(base_url, allowed_domains)
    if safe_base is None:
        return None
    parts = urlsplit(safe_base)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update(sanitize_params(params))
    return urlunsplit(parts._replace(query=urlencode(query)))


def user_redirect_data(user: User) -> dict:
    """userId/email/name for INCLUDE_USER_DATA_IN_REDIRECT.

    name is "first last" when both are set, otherwise the first name alone.
    """
    if user.first_name and user.last_name:
        name = f"{user.first_name} {user.last_name}"
    else:
        name = user.first_name
    return {"userId": str(user.id), "email": user.email, "name": name}


def build_success_redirect(settings: Settings, access_token: str, refresh_token: str, user: User | None = None) -> str | None:
    params: dict = {"accessToken": access_token, "refreshToken": refresh_token}
    if settings.include_user_data_in_redirect and user is not None:
        params.update(user_redirect_data(user))
    return build_redirect_url(settings.frontend_success_url, params, settings.allowed_redirect_domain_list)


def build_error_redirect(settings: Settings, error: str, message: str | None = None) -> str | None:
    params = {"error": error, "message": message}
    return build_redirect_url(settings.error_redirect_base, params, settings.allowed_redirect_domain_list)


# ---------------------------------------------------------------------------
# Email links
# ---------------------------------------------------------------------------


def magic_link_url(settings: Settings, raw_token: str) -> str | None:
    """Verification link embedded in the magic-link email.

    REST-enabled deployments point at the server's GET verify endpoint, which
    redirects onward; graphql-only deployments point at the frontend page that
    submits the token itself.
    """
    if settings.rest_enabled:
        base = f"{settings.app_url.rstrip('/')}{API_PREFIX}/auth/magic-link/verify"
    else:
        base = f"{settings.frontend_success_url.rstrip('/')}/auth/magic-link"
    return build_redirect_url(base, {"token": raw_token})


def otp_verify_url(settings: Settings, email: str, code: str) -> str | None:
    """Frontend page that pre-fills the code from the OTP email."""
    base = f"{settings.frontend_success_url.rstrip('/')}/auth/verify"
    return build_redirect_url(base, {"email": email, "otp": code, "sent": "true"})


def password_reset_url(settings: Settings, raw_token: str) -> str | None:
    """Frontend page that collects the new password for a reset token."""
    base = f"{settings.frontend_success_url.rstrip('/')}/auth/reset-password"
    return build_redirect_url(base, {"token": raw_token})


def login_url(settings: Settings) -> str | None:
    return build_redirect_url(f"{settings.frontend_success_url.rstrip('/')}/auth/login", {})
