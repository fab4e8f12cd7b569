"""
Resilience primitives: retry with exponential backoff and a per-provider
circuit that takes a provider out of rotation for a cool-down.

These wrap provider calls so transient failures are retried, terminal ones
fail fast, and providers reporting quota or credential problems are left
alone until they can be expected to answer again.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from ..core.clock import Clock, SystemClock
from ..core.context import CancelToken
from ..core.errors import DecodeError, ProviderError, RequestCancelled, RetriesExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff."""
    max_retries: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 10.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry number ``attempt + 1`` (attempt is 0-based)."""
        return min(self.base_delay_s * (self.backoff_factor ** attempt), self.max_delay_s)


@dataclass
class ProviderCircuit:
    """
    Availability switch for one provider.

    States:
    - CLOSED: provider is called normally.
    - OPEN: provider is skipped until `disabled_until`.

    Transitions:
    - CLOSED -> OPEN immediately on trip() (quota or authorization errors),
      for `disable_cooldown_s`.
    - CLOSED -> OPEN after `failure_threshold` consecutive failures, for
      `breaker_cooldown_s`.
    - OPEN -> CLOSED once the clock passes `disabled_until`.
    """
    provider_name: str
    failure_threshold: int = 3
    breaker_cooldown_s: float = 60.0
    disable_cooldown_s: float = 600.0
    clock: Clock = field(default_factory=SystemClock, repr=False)
    _failure_count: int = field(default=0, init=False, repr=False)
    _open_until: Optional[float] = field(default=None, init=False, repr=False)
    _disabled_until: Optional[datetime] = field(default=None, init=False, repr=False)
    _last_error: Optional[str] = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> str:
        return "CLOSED" if self.available else "OPEN"

    @property
    def available(self) -> bool:
        with self._lock:
            if self._open_until is None:
                return True
            if self.clock.monotonic() >= self._open_until:
                self._open_until = None
                self._disabled_until = None
                self._failure_count = 0
                logger.info("Provider %s re-enabled after cool-down", self.provider_name)
                return True
            return False

    @property
    def disabled_until(self) -> Optional[datetime]:
        if self.available:
            return None
        return self._disabled_until

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._open_until = None
            self._disabled_until = None
            self._last_error = None

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_error = error[:500]
            if self._failure_count >= self.failure_threshold and self._open_until is None:
                self._open_locked(self.breaker_cooldown_s)
                logger.warning(
                    "Circuit OPEN for %s after %d failures: %s",
                    self.provider_name, self._failure_count, error[:200],
                )

    def trip(self, error: str, cooldown_s: Optional[float] = None) -> None:
        """Disable now, regardless of the failure count."""
        cooldown = self.disable_cooldown_s if cooldown_s is None else cooldown_s
        with self._lock:
            self._last_error = error[:500]
            self._open_locked(cooldown)
        logger.warning(
            "Provider %s disabled for %.0fs: %s", self.provider_name, cooldown, error[:200]
        )

    def reset(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._open_until = None
            self._disabled_until = None
            self._last_error = None

    def _open_locked(self, cooldown_s: float) -> None:
        self._open_until = self.clock.monotonic() + cooldown_s
        self._disabled_until = self.clock.now() + timedelta(seconds=cooldown_s)


def retry_call(
    func: Callable[..., T],
    *args: Any,
    provider_name: str,
    retry_config: Optional[RetryConfig] = None,
    clock: Optional[Clock] = None,
    cancel: Optional[CancelToken] = None,
    **kwargs: Any,
) -> T:
    """
    Execute a provider call with bounded retries and exponential backoff.

    Up to ``max_retries + 1`` attempts. Errors marked non-retryable are raised
    straight away; DecodeError gets one retry at most. On exhaustion raises
    RetriesExhausted chained from the last error.
    """
    cfg = retry_config or RetryConfig()
    clk = clock or SystemClock()

    last_err: Optional[BaseException] = None
    attempts = 0
    for attempt in range(cfg.max_retries + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        attempts += 1
        try:
            return func(*args, **kwargs)
        except RequestCancelled:
            raise
        except ProviderError as exc:
            last_err = exc
            if not exc.retryable:
                logger.debug("%s: terminal error, not retrying: %s", provider_name, exc)
                raise
            if isinstance(exc, DecodeError):
                logger.error(
                    "%s: unexpected response shape (upstream schema change?): %s",
                    provider_name, exc,
                )
                if attempt >= DecodeError.max_retries:
                    break
        except Exception as exc:
            last_err = exc

        logger.debug(
            "%s: attempt %d/%d failed: %s: %s",
            provider_name, attempts, cfg.max_retries + 1, type(last_err).__name__, last_err,
        )
        if attempt < cfg.max_retries:
            clk.sleep(cfg.delay_for(attempt), cancel)

    raise RetriesExhausted(provider_name, attempts, last_err) from last_err  # type: ignore[arg-type]
