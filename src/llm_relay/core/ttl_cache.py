"""Time-boxed in-memory map with opportunistic pruning."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")

DEFAULT_PRUNE_THRESHOLD = 1000


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    value: V
    stored_at: float


class TimedCache(Generic[V]):
    """A dict whose entries count as live for ``ttl`` seconds after being stored.

    Nothing is evicted on read. Once a write pushes the size past
    ``prune_threshold``, every entry older than the TTL is dropped.
    """

    def __init__(
        self,
        ttl: float,
        prune_threshold: int = DEFAULT_PRUNE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self._prune_threshold = prune_threshold
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}

    def get(self, key: Hashable, ttl: float | None = None) -> Optional[V]:
        """Return the cached value if it is younger than ``ttl`` (default: the cache TTL)."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        max_age = self.ttl if ttl is None else ttl
        if self._clock() - entry.stored_at < max_age:
            return entry.value
        return None

    def put(self, key: Hashable, value: V, stored_at: float | None = None) -> None:
        now = self._clock() if stored_at is None else stored_at
        self._entries[key] = CacheEntry(value=value, stored_at=now)
        if len(self._entries) > self._prune_threshold:
            self.prune(now)

    def prune(self, now: float | None = None, ttl: float | None = None) -> int:
        """Drop entries older than the TTL. Returns how many were removed."""
        now = self._clock() if now is None else now
        oldest_allowed = now - (self.ttl if ttl is None else ttl)
        stale = [key for key, entry in self._entries.items() if entry.stored_at < oldest_allowed]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries
