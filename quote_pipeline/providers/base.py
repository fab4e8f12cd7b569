"""
Provider interfaces and data contracts.

Every upstream source implements QuoteProvider: fetch_quote for a single
symbol and search_symbol for free-text lookup. Results come back as frozen
dataclasses in one canonical shape, whatever the provider's JSON looks like.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable


class DataSource(enum.Enum):
    """Where a Quote's value came from."""

    PRIMARY_FEED = "PrimaryFeed"
    SECONDARY_FEED = "SecondaryFeed"
    CACHE = "Cache"


class ProviderStatus(enum.Enum):
    """Health status of a data provider."""

    OK = "OK"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


@dataclass(frozen=True)
class Quote:
    """Immutable price quote for one symbol."""

    symbol: str
    current_price: float
    previous_close: Optional[float]
    source: DataSource
    fetched_at: datetime
    is_stale: bool = False
    provider_name: Optional[str] = None
    change: Optional[float] = None
    change_percent: Optional[float] = None

    def is_valid(self) -> bool:
        return self.current_price is not None and self.current_price > 0

    @property
    def daily_change_percent(self) -> Optional[float]:
        if self.previous_close is None or self.previous_close == 0:
            return None
        return (self.current_price - self.previous_close) / self.previous_close * 100.0

    def with_source(self, source: DataSource, *, is_stale: bool = False) -> "Quote":
        return replace(self, source=source, is_stale=is_stale)


@dataclass(frozen=True)
class SymbolResult:
    """One match from a symbol search."""

    symbol: str
    name: str
    provider_name: str
    type: Optional[str] = None
    region: Optional[str] = None
    currency: Optional[str] = None


@dataclass
class ProviderHealth:
    """Mutable health state for a single provider instance."""

    provider_name: str
    status: ProviderStatus = ProviderStatus.OK
    last_ok_at: Optional[str] = None
    fail_count: int = 0
    last_error: Optional[str] = None
    disabled_until: Optional[str] = None

    def record_success(self, now: Optional[datetime] = None) -> None:
        self.status = ProviderStatus.OK
        self.fail_count = 0
        self.last_ok_at = (now or datetime.now(timezone.utc)).isoformat(timespec="seconds")
        self.last_error = None
        self.disabled_until = None

    def record_failure(self, error: str) -> None:
        self.fail_count += 1
        self.last_error = error[:500]
        if self.fail_count >= 5:
            self.status = ProviderStatus.DOWN
        elif self.fail_count >= 2:
            self.status = ProviderStatus.DEGRADED

    def record_disabled(self, until: datetime, error: str) -> None:
        self.status = ProviderStatus.DOWN
        self.disabled_until = until.isoformat(timespec="seconds")
        self.last_error = error[:500]


@runtime_checkable
class QuoteProvider(Protocol):
    """Protocol for upstream quote sources."""

    @property
    def provider_name(self) -> str: ...

    def fetch_quote(self, symbol: str, timeout: float) -> Quote:
        """Fetch the current price for ``symbol`` within ``timeout`` seconds."""
        ...

    def search_symbol(self, query: str, timeout: float) -> List[SymbolResult]:
        """Search symbols matching ``query`` within ``timeout`` seconds."""
        ...


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()
