"""
api/limiter.py -- Shared slowapi rate limiter instance (per client IP).

Import this in both api/main.py (to mount as middleware) and the v1 route
modules (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.

This is the coarse per-IP layer. Per-identity throttling of magic-link
requests lives in auth/ratelimit.py.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)


def auth_rate_limit() -> str:
    """Per-IP limit string for credential endpoints (AUTH_RATE_LIMIT)."""
    return get_settings().auth_rate_limit
