"""
In-memory key -> value store where every entry carries its own TTL.

Expired entries are invisible to get() but stay in memory until purged,
evicted for capacity, or cleared, so the resolver can still serve them as
stale data when every live source is down.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

from ..core.clock import Clock, SystemClock

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl

    def remaining(self, now: float) -> float:
        return self.ttl - (now - self.stored_at)


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    entry_count: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ExpiringCache:
    """Thread-safe TTL cache. One lock guards the whole map."""

    def __init__(self, *, max_entries: Optional[int] = None, clock: Optional[Clock] = None) -> None:
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be greater than zero")
        self._max_entries = max_entries
        self._clock = clock or SystemClock()
        self._store: Dict[str, CacheEntry[Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` if present and unexpired, else None."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None or not entry.is_fresh(self._clock.monotonic()):
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def get_entry(self, key: str, *, include_expired: bool = False) -> Optional[CacheEntry[Any]]:
        """Raw entry lookup; with include_expired the TTL is ignored. Does not touch stats."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if not include_expired and not entry.is_fresh(self._clock.monotonic()):
                return None
            return entry

    def set(self, key: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be greater than zero")
        with self._lock:
            self._store.pop(key, None)
            if self._max_entries is not None and len(self._store) >= self._max_entries:
                self._evict_one()
            self._store[key] = CacheEntry(value=value, stored_at=self._clock.monotonic(), ttl=float(ttl))

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0

    def purge_expired(self) -> int:
        """Physically drop expired entries; returns how many were removed."""
        with self._lock:
            now = self._clock.monotonic()
            expired = [k for k, e in self._store.items() if not e.is_fresh(now)]
            for k in expired:
                del self._store[k]
            return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, entry_count=len(self._store))

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def _evict_one(self) -> None:
        # Caller holds the lock. Expired entries go first, then the oldest write.
        now = self._clock.monotonic()
        for k, e in self._store.items():
            if not e.is_fresh(now):
                del self._store[k]
                return
        oldest = min(self._store, key=lambda k: self._store[k].stored_at)
        del self._store[oldest]
