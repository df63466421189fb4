"""In-memory sliding window rate limiter for the API surface.

A request is admitted when fewer than ``max_requests`` admitted requests for
the same key fall inside the window ending now. Rejected requests do not
consume a slot.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from src.models import RateLimitConfig, RateLimitDecision, RateLimitEntry
from src.ratelimit.store import InMemoryRateLimitStore, RateLimitStore, prune

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_MS = 60_000


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """Sliding window admission control per derived identity key."""

    def __init__(
        self,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = monotonic_ms,
        sweep_interval_ms: int = SWEEP_INTERVAL_MS,
    ) -> None:
        self._store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self._sweep_interval_ms = sweep_interval_ms
        self._last_sweep = clock()

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def check(self, key: str, config: RateLimitConfig) -> RateLimitDecision:
        """Admit or reject one request for ``key``."""
        now = self._clock()
        self._maybe_sweep(now)

        # Misconfigured classes fail closed
        if config.max_requests <= 0 or config.window_ms <= 0:
            logger.debug("Rejecting %s: invalid rate limit config %s", key, config)
            return RateLimitDecision.reject(math.ceil(max(config.window_ms, 0) / 1000))

        with self._store.locked(key):
            entry = self._store.get(key) or RateLimitEntry()
            entry.timestamps = prune(entry.timestamps, now, config.window_ms)
            entry.window_ms = config.window_ms

            if len(entry.timestamps) >= config.max_requests:
                self._store.put(key, entry)
                oldest = entry.timestamps[0]
                retry_after = math.ceil((oldest + config.window_ms - now) / 1000)
                return RateLimitDecision.reject(retry_after)

            entry.timestamps.append(now)
            self._store.put(key, entry)
        return RateLimitDecision.allow()

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval_ms:
            return
        self._last_sweep = now
        removed = self._store.sweep_expired(now)
        if removed:
            logger.debug("Rate limit sweep removed %d idle keys", removed)
