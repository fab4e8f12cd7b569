"""
Per-provider fixed-window rate limiter.

Each provider gets `limit` calls per `window_s` seconds. Calls are allowed
immediately until the window fills, then callers block until it turns over.
This is a fixed window, not a token bucket: up to 2x the limit can pass in
a short span straddling a window boundary.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..core.clock import Clock, SystemClock
from ..core.context import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    limit: int
    window_s: float
    request_count: int = 0
    window_start: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def try_reserve(self, now: float) -> float:
        """Reserve a slot and return 0.0, or return the seconds until the window turns.

        Caller must hold ``lock``.
        """
        if self.window_start is None or now - self.window_start >= self.window_s:
            self.request_count = 0
            self.window_start = now
        if self.request_count >= self.limit:
            return self.window_s - (now - self.window_start)
        self.request_count += 1
        return 0.0


class FixedWindowRateLimiter:
    """Thread-safe limiter keyed by provider id. Unconfigured providers are unlimited."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def configure(self, provider_id: str, limit: int, window_s: float) -> None:
        if limit <= 0:
            raise ValueError("limit must be greater than zero")
        if window_s <= 0:
            raise ValueError("window_s must be greater than zero")
        with self._lock:
            self._windows[provider_id] = RateWindow(limit=int(limit), window_s=float(window_s))

    def is_limited(self, provider_id: str) -> bool:
        with self._lock:
            return provider_id in self._windows

    def acquire(self, provider_id: str, cancel: Optional[CancelToken] = None) -> float:
        """Block until ``provider_id`` has a free slot, take it, and return seconds waited."""
        with self._lock:
            window = self._windows.get(provider_id)
        if window is None:
            return 0.0

        waited = 0.0
        while True:
            with window.lock:
                wait_time = window.try_reserve(self._clock.monotonic())
            if wait_time <= 0:
                if waited > 0:
                    logger.debug("Rate limit slot for %s after %.2fs", provider_id, waited)
                return waited
            logger.info(
                "Rate limit reached for %s (%d per %.0fs), waiting %.2fs",
                provider_id, window.limit, window.window_s, wait_time,
            )
            self._clock.sleep(wait_time, cancel)
            waited += wait_time

    def snapshot(self, provider_id: str) -> Optional[Dict[str, float]]:
        """Current window counters, for diagnostics."""
        with self._lock:
            window = self._windows.get(provider_id)
        if window is None:
            return None
        with window.lock:
            return {
                "limit": window.limit,
                "window_s": window.window_s,
                "request_count": window.request_count,
                "window_start": window.window_start if window.window_start is not None else -1.0,
            }
