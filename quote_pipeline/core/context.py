"""
Caller-level cancellation for a quote request.

A CancelToken combines an explicit cancel() with an optional deadline.
Every suspension point in the pipeline (rate-limit waits, backoff sleeps)
checks it, and network timeouts are clamped to whatever time is left.
"""

from __future__ import annotations

import threading
from typing import Optional

from .clock import Clock, SystemClock
from .errors import RequestCancelled


class CancelToken:
    def __init__(self, timeout: Optional[float] = None, *, clock: Optional[Clock] = None) -> None:
        self._event = threading.Event()
        self._clock = clock or SystemClock()
        self._deadline: Optional[float] = None
        if timeout is not None:
            self._deadline = self._clock.monotonic() + max(float(timeout), 0.0)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(self._deadline - self._clock.monotonic(), 0.0)

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``; True if cancel() was called meanwhile."""
        return self._event.wait(max(seconds, 0.0))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled()
        if self.expired:
            raise RequestCancelled("deadline exceeded", deadline_exceeded=True)

    def clamp(self, timeout: float) -> float:
        """Shrink a per-call timeout so it never outlives the caller's deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
