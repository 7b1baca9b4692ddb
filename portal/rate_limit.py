"""Fixed-window attempt counters keyed by identifier.

The store is handed to callers explicitly (``app.state.rate_limiter``) so a
shared backend (``RATE_LIMIT_STORAGE_URI=redis://...``) can replace the
process-local ``memory://`` one without touching the login code.
"""
from __future__ import annotations

import abc
import logging
import os
import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

LOGIN_WINDOW_SECONDS = 15 * 60
USERNAME_LIMIT = 5
IP_LIMIT = 10
DEFAULT_STORAGE_URI = "memory://"


@dataclass
class RateLimitResult:
    success: bool
    remaining: int
    reset_time: float  # epoch seconds
    retry_after: float


class RateLimitStore(abc.ABC):
    @abc.abstractmethod
    def hit(self, identifier: str, limit: int, window: float) -> RateLimitResult:
        """Count one attempt for ``identifier`` and report whether it is allowed."""

    @abc.abstractmethod
    def reset(self, identifier: str) -> None:
        """Forget all attempts for ``identifier``."""


class LimitsRateLimitStore(RateLimitStore):
    """Store backed by the ``limits`` package.

    ``memory://`` keeps counters in this process and expires each window on
    its own; ``redis://host:6379/0`` lets several app instances share them.
    """

    def __init__(self, storage_uri: str = DEFAULT_STORAGE_URI):
        self._limiter = FixedWindowRateLimiter(storage_from_string(storage_uri))
        self._items: dict[tuple[int, int], RateLimitItemPerSecond] = {}

    def _item(self, limit: int, window: float) -> RateLimitItemPerSecond:
        key = (limit, int(window))
        if key not in self._items:
            self._items[key] = RateLimitItemPerSecond(limit, int(window))
        return self._items[key]

    def hit(self, identifier: str, limit: int, window: float) -> RateLimitResult:
        item = self._item(limit, window)
        allowed = self._limiter.hit(item, identifier)
        stats = self._limiter.get_window_stats(item, identifier)
        retry_after = max(0.0, stats.reset_time - time.time())
        return RateLimitResult(allowed, stats.remaining, stats.reset_time, retry_after)

    def reset(self, identifier: str) -> None:
        for item in list(self._items.values()):
            self._limiter.clear(item, identifier)


def store_from_env() -> RateLimitStore:
    uri = os.getenv("RATE_LIMIT_STORAGE_URI") or DEFAULT_STORAGE_URI
    if uri != DEFAULT_STORAGE_URI:
        logger.info("Using shared rate limit storage %s", uri.split("://", 1)[0])
    return LimitsRateLimitStore(uri)
