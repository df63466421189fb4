"""Rate-limit entry storage.

The limiter talks to storage only through the ``RateLimitStore`` protocol so a
networked counter service can replace the in-memory store when the gateway
runs as several stateless instances. The in-memory store is per process and
is lost on restart; it is suitable for abuse control, not for billing quotas.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Protocol

from src.models import RateLimitEntry

_LOCK_STRIPES = 64


class RateLimitStore(Protocol):
    def get(self, key: str) -> RateLimitEntry | None: ...

    def put(self, key: str, entry: RateLimitEntry) -> None: ...

    def sweep_expired(self, now: float) -> int: ...

    def locked(self, key: str) -> AbstractContextManager[None]: ...


def prune(timestamps: list[float], now: float, window_ms: int) -> list[float]:
    """Return the timestamps still inside the window ending at ``now``."""
    return [t for t in timestamps if now - t < window_ms]


class InMemoryRateLimitStore:
    """Process-local store guarded by striped per-key locks.

    ``locked(key)`` serializes the read-filter-append sequence of concurrent
    checks on the same key. Keys hash onto a fixed set of locks, so the lock
    table never grows with the number of callers.
    """

    def __init__(self, stripes: int = _LOCK_STRIPES) -> None:
        self._entries: dict[str, RateLimitEntry] = {}
        self._stripes = [threading.Lock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _stripe(self, key: str) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def get(self, key: str) -> RateLimitEntry | None:
        return self._entries.get(key)

    def put(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = entry

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        with self._stripe(key):
            yield

    def sweep_expired(self, now: float) -> int:
        """Drop expired timestamps everywhere and delete empty keys.

        Returns the number of keys removed.
        """
        removed = 0
        for key in list(self._entries):
            with self._stripe(key):
                entry = self._entries.get(key)
                if entry is None:
                    continue
                entry.timestamps = prune(entry.timestamps, now, entry.window_ms)
                if not entry.timestamps:
                    del self._entries[key]
                    removed += 1
        return removed

    def clear(self) -> None:
        self._entries.clear()
