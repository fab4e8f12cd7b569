"""
Single source for time. Components take a Clock so tests can swap in a
fake one and run backoff, cool-down and window logic without real sleeps.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Protocol

from .errors import RequestCancelled

if TYPE_CHECKING:
    from .context import CancelToken


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def now(self) -> datetime: ...

    def sleep(self, seconds: float, cancel: Optional["CancelToken"] = None) -> None: ...


class SystemClock:
    """Wall clock plus monotonic timer; sleeps wake early on cancellation."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel: Optional["CancelToken"] = None) -> None:
        if cancel is None:
            if seconds > 0:
                time.sleep(seconds)
            return

        cancel.raise_if_cancelled()
        if seconds <= 0:
            return
        remaining = cancel.remaining()
        budget = seconds if remaining is None else min(seconds, remaining)
        if cancel.wait(budget):
            raise RequestCancelled()
        if remaining is not None and remaining < seconds:
            raise RequestCancelled("deadline exceeded", deadline_exceeded=True)


def utc_now_iso(clock: Optional[Clock] = None) -> str:
    now = clock.now() if clock is not None else datetime.now(timezone.utc)
    return now.isoformat(timespec="seconds")
