"""
Quote-resolution pipeline: symbol -> current price with previous close.

Canonical entrypoint: build a resolver with
quote_pipeline.providers.defaults.create_quote_resolver() and call
resolve_quote / search_symbols / clear_caches on it.
"""

from __future__ import annotations

from ._version import __version__
from .core.errors import AllSourcesExhausted, QuotePipelineError
from .providers.base import DataSource, Quote, SymbolResult
from .providers.chain import QuoteResolver

__all__ = [
    "__version__",
    "AllSourcesExhausted",
    "DataSource",
    "Quote",
    "QuotePipelineError",
    "QuoteResolver",
    "SymbolResult",
]
