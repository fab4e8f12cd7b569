"""Upstream quote feeds, one adapter per provider."""
from __future__ import annotations

from .alphavantage import AlphaVantageProvider
from .yahoo import YahooFinanceProvider

__all__ = ["AlphaVantageProvider", "YahooFinanceProvider"]
