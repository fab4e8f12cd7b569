"""
Yahoo Finance quote provider (primary real-time feed).

Uses the public chart and search endpoints (no authentication required):
  GET https://query1.finance.yahoo.com/v8/finance/chart/{symbol}
  GET https://query1.finance.yahoo.com/v1/finance/search?q={query}
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests

from ...core.clock import Clock, SystemClock
from ...core.errors import DecodeError, InvalidRequest, SymbolNotFound
from ..base import DataSource, Quote, SymbolResult, normalize_symbol
from ..http import get_json, to_float

YAHOO_BASE_URL = "https://query1.finance.yahoo.com"


def _chart_meta(data: Any, symbol: str, provider_name: str) -> Dict[str, Any]:
    if not isinstance(data, dict) or not isinstance(data.get("chart"), dict):
        raise DecodeError(f"unexpected chart response type: {type(data).__name__}", provider_name)
    chart = data["chart"]

    err = chart.get("error")
    if err:
        desc = err.get("description") if isinstance(err, dict) else str(err)
        raise SymbolNotFound(f"{symbol}: {desc or 'unknown symbol'}", provider_name)

    result = chart.get("result")
    if not result:
        raise SymbolNotFound(f"{symbol}: empty chart result", provider_name)
    first = result[0] if isinstance(result, list) else None
    meta = first.get("meta") if isinstance(first, dict) else None
    if not isinstance(meta, dict):
        raise DecodeError("chart result has no meta object", provider_name)
    return meta


class YahooFinanceProvider:
    """Fetch quotes from the Yahoo Finance chart API."""

    def __init__(
        self,
        *,
        base_url: str = YAHOO_BASE_URL,
        session: Optional[requests.Session] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._clock = clock or SystemClock()

    @property
    def provider_name(self) -> str:
        return "yahoo"

    def fetch_quote(self, symbol: str, timeout: float = 10.0) -> Quote:
        sym = normalize_symbol(symbol)
        if not sym:
            raise InvalidRequest("empty symbol", self.provider_name)

        data = get_json(
            f"{self._base_url}/v8/finance/chart/{sym}",
            params={"interval": "1d", "range": "1d"},
            provider_name=self.provider_name,
            timeout=timeout,
            session=self._session,
        )
        meta = _chart_meta(data, sym, self.provider_name)

        # The feed reports 0 instead of omitting the price when it has none.
        price = to_float(meta.get("regularMarketPrice"))
        if price is None or price <= 0:
            raise SymbolNotFound(f"{sym}: no price (got {meta.get('regularMarketPrice')!r})", self.provider_name)

        prev = to_float(meta.get("chartPreviousClose"))
        if prev is None:
            prev = to_float(meta.get("previousClose"))
        if prev is not None and prev <= 0:
            prev = None

        change = price - prev if prev is not None else None
        change_pct = change / prev * 100.0 if change is not None and prev else None
        return Quote(
            symbol=str(meta.get("symbol") or sym).upper(),
            current_price=price,
            previous_close=prev,
            source=DataSource.PRIMARY_FEED,
            fetched_at=self._clock.now(),
            provider_name=self.provider_name,
            change=change,
            change_percent=change_pct,
        )

    def search_symbol(self, query: str, timeout: float = 10.0) -> List[SymbolResult]:
        q = (query or "").strip()
        if not q:
            raise InvalidRequest("empty search query", self.provider_name)

        data = get_json(
            f"{self._base_url}/v1/finance/search",
            params={"q": q, "quotesCount": 10, "newsCount": 0},
            provider_name=self.provider_name,
            timeout=timeout,
            session=self._session,
        )
        if not isinstance(data, dict):
            raise DecodeError(f"unexpected search response type: {type(data).__name__}", self.provider_name)
        quotes = data.get("quotes")
        if quotes is None:
            return []
        if not isinstance(quotes, list):
            raise DecodeError("search response 'quotes' is not a list", self.provider_name)

        results: List[SymbolResult] = []
        for item in quotes:
            if not isinstance(item, dict) or not item.get("symbol"):
                continue
            results.append(
                SymbolResult(
                    symbol=str(item["symbol"]).upper(),
                    name=item.get("longname") or item.get("shortname") or str(item["symbol"]),
                    provider_name=self.provider_name,
                    type=item.get("quoteType"),
                    region=item.get("exchange"),
                    currency=item.get("currency"),
                )
            )
        return results
