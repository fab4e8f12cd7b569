"""
Alpha Vantage quote provider (secondary feed and symbol search).

Requires an API key:
  GET https://www.alphavantage.co/query?function=GLOBAL_QUOTE&symbol={symbol}&apikey={key}
  GET https://www.alphavantage.co/query?function=SYMBOL_SEARCH&keywords={query}&apikey={key}

The free tier allows 5 calls per minute and reports quota problems inside
a 200 response ("Information" / "Note"), not as HTTP 429.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import requests

from ...core.clock import Clock, SystemClock
from ...core.errors import (
    AuthorizationFailed,
    DecodeError,
    InvalidRequest,
    ProviderError,
    RateLimited,
    SymbolNotFound,
)
from ..base import DataSource, Quote, SymbolResult, normalize_symbol
from ..http import get_json, to_float

ALPHAVANTAGE_BASE_URL = "https://www.alphavantage.co/query"

_RATE_LIMIT_RE = re.compile(r"rate limit|call frequency|requests per|premium", re.IGNORECASE)
_AUTH_RE = re.compile(r"api ?key|apikey", re.IGNORECASE)

# Abbreviated, numbered keys used inside "Global Quote".
_PRICE = "05. price"
_PREV_CLOSE = "08. previous close"
_CHANGE = "09. change"
_CHANGE_PCT = "10. change percent"
_SYMBOL = "01. symbol"


def _raise_for_payload_message(data: Dict[str, Any], provider_name: str, *, search: bool) -> None:
    """Alpha Vantage signals errors in the body; turn them into ProviderErrors."""
    for key in ("Information", "Note"):
        msg = data.get(key)
        if not msg:
            continue
        text = str(msg)
        if _RATE_LIMIT_RE.search(text):
            raise RateLimited(text[:200], provider_name)
        if _AUTH_RE.search(text):
            raise AuthorizationFailed(text[:200], provider_name)
        raise ProviderError(text[:200], provider_name)

    err = data.get("Error Message")
    if err:
        text = str(err)
        if _AUTH_RE.search(text) and "invalid" in text.lower():
            raise AuthorizationFailed(text[:200], provider_name)
        if search:
            raise InvalidRequest(text[:200], provider_name)
        raise SymbolNotFound(text[:200], provider_name)


class AlphaVantageProvider:
    """Fetch quotes and search symbols via the Alpha Vantage API."""

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = ALPHAVANTAGE_BASE_URL,
        session: Optional[requests.Session] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._session = session
        self._clock = clock or SystemClock()

    @property
    def provider_name(self) -> str:
        return "alphavantage"

    def _query(self, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        if not self._api_key:
            raise AuthorizationFailed("no API key configured", self.provider_name)
        data = get_json(
            self._base_url,
            params={**params, "apikey": self._api_key},
            provider_name=self.provider_name,
            timeout=timeout,
            session=self._session,
        )
        if not isinstance(data, dict):
            raise DecodeError(f"unexpected response type: {type(data).__name__}", self.provider_name)
        return data

    def fetch_quote(self, symbol: str, timeout: float = 10.0) -> Quote:
        sym = normalize_symbol(symbol)
        if not sym:
            raise InvalidRequest("empty symbol", self.provider_name)

        data = self._query({"function": "GLOBAL_QUOTE", "symbol": sym}, timeout)
        _raise_for_payload_message(data, self.provider_name, search=False)

        if "Global Quote" not in data:
            raise DecodeError(f"missing 'Global Quote'. Keys: {list(data.keys())}", self.provider_name)
        gq = data["Global Quote"]
        if not gq:
            raise SymbolNotFound(f"{sym}: empty quote", self.provider_name)
        if not isinstance(gq, dict):
            raise DecodeError("'Global Quote' is not an object", self.provider_name)

        price = to_float(gq.get(_PRICE))
        if price is None or price <= 0:
            raise SymbolNotFound(f"{sym}: no price (got {gq.get(_PRICE)!r})", self.provider_name)

        prev = to_float(gq.get(_PREV_CLOSE))
        if prev is not None and prev <= 0:
            prev = None

        return Quote(
            symbol=str(gq.get(_SYMBOL) or sym).upper(),
            current_price=price,
            previous_close=prev,
            source=DataSource.SECONDARY_FEED,
            fetched_at=self._clock.now(),
            provider_name=self.provider_name,
            change=to_float(gq.get(_CHANGE)),
            change_percent=to_float(gq.get(_CHANGE_PCT)),
        )

    def search_symbol(self, query: str, timeout: float = 10.0) -> List[SymbolResult]:
        q = (query or "").strip()
        if not q:
            raise InvalidRequest("empty search query", self.provider_name)

        data = self._query({"function": "SYMBOL_SEARCH", "keywords": q}, timeout)
        _raise_for_payload_message(data, self.provider_name, search=True)

        matches = data.get("bestMatches")
        if matches is None:
            raise DecodeError(f"missing 'bestMatches'. Keys: {list(data.keys())}", self.provider_name)
        if not isinstance(matches, list):
            raise DecodeError("'bestMatches' is not a list", self.provider_name)

        return [
            SymbolResult(
                symbol=str(m["1. symbol"]).upper(),
                name=m.get("2. name") or str(m["1. symbol"]),
                provider_name=self.provider_name,
                type=m.get("3. type"),
                region=m.get("4. region"),
                currency=m.get("8. currency"),
            )
            for m in matches
            if isinstance(m, dict) and m.get("1. symbol")
        ]
