"""
auth/ratelimit.py -- Fixed-window throttle keyed by identity (email).

slowapi (api/limiter.py) throttles per client IP at the route level. This
limiter throttles per *identity*, which an attacker cannot rotate by
switching addresses. Both sit on the same `limits` library: slowapi for
the route decorator, FixedWindowRateLimiter directly here.

Semantics:
  - First hit for a key opens a window of window_seconds.
  - Hits inside the window count up; allow() returns False once the count
    exceeds max_requests.
  - When now - window_start >= window_seconds the storage drops the counter
    and the next hit opens a fresh window.

Storage is chosen by URI. "memory://" is process-local (the default, and a
documented limitation for multi-instance deployments); "redis://..." or any
other `limits` storage URI shares windows across processes. The memory
storage is lock-protected, so concurrent requests for one key can at worst
overcount by a hit near a window boundary.

The limiter is an injected object (one per service), never a module-level
singleton, so tests and services each own their windows.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from datetime import timedelta

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger("portcullis.auth.ratelimit")


class RateLimiter:
    """Per-key fixed-window counter.

    Usage:
        limiter = RateLimiter(max_requests=3, window_seconds=900)
        if not limiter.allow("user@example.com"):
            wait = limiter.remaining_cooldown("user@example.com")
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        storage_uri: str = "memory://",
        namespace: str = "identity",
    ) -> None:
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._item = RateLimitItemPerSecond(max_requests, window_seconds, namespace=namespace)
        self._storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)
        # Keys with a possibly-open window; sweep() trims it.
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Count one request for key. Returns False once the window's max is exceeded."""
        self.sweep()
        with self._lock:
            self._keys.add(key)
        allowed = self._strategy.hit(self._item, key)
        if not allowed:
            logger.debug("Rate limit exceeded for key prefix %s...", key[:8])
        return allowed

    def remaining_cooldown(self, key: str) -> timedelta:
        """Time until key may make another request; zero if it may now."""
        stats = self._strategy.get_window_stats(self._item, key)
        if stats.remaining > 0:
            return timedelta(0)
        return timedelta(seconds=max(0.0, stats.reset_time - time.time()))

    def retry_after_minutes(self, key: str) -> int:
        """Remaining cooldown rounded up to whole minutes, for user-facing messages."""
        return math.ceil(self.remaining_cooldown(key).total_seconds() / 60)

    def sweep(self) -> int:
        """Forget keys whose window has fully elapsed. Returns how many were removed.

        Reading the window stats lets the storage evict an expired counter; a
        key whose full quota is available again has no open window.
        """
        with self._lock:
            keys = list(self._keys)
        expired = [
            key for key in keys if self._strategy.get_window_stats(self._item, key).remaining >= self.max_requests
        ]
        with self._lock:
            self._keys.difference_update(expired)
        return len(expired)

    def reset(self) -> None:
        """Drop every window. Test and operator use only."""
        with self._lock:
            self._keys.clear()
        self._storage.reset()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
