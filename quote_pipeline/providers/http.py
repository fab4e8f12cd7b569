"""
HTTP GET + JSON decode shared by the feed adapters.

Maps transport failures and status codes onto the canonical error
taxonomy so adapters only deal with payload shapes.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from ..core.errors import (
    AuthorizationFailed,
    DecodeError,
    InvalidRequest,
    NetworkError,
    ProviderTimeout,
    RateLimited,
    ServerError,
    SymbolNotFound,
)

USER_AGENT = "quote-pipeline/0.3 (+https://pypi.org/project/requests/)"


def get_json(
    url: str,
    *,
    provider_name: str,
    timeout: float,
    params: Optional[Dict[str, Any]] = None,
    session: Optional[requests.Session] = None,
) -> Any:
    """GET ``url`` and return the decoded JSON body, raising ProviderError subclasses."""
    if timeout <= 0:
        raise ProviderTimeout("no time left for request", provider_name)

    getter = session.get if session is not None else requests.get
    try:
        resp = getter(url, params=params, timeout=timeout, headers={"User-Agent": USER_AGENT})
    except requests.Timeout as exc:
        raise ProviderTimeout(f"request timed out after {timeout:.1f}s", provider_name) from exc
    except requests.RequestException as exc:
        raise NetworkError(f"{type(exc).__name__}: {exc}", provider_name) from exc

    status = resp.status_code
    if status == 429:
        raise RateLimited("rate limit (HTTP 429)", provider_name)
    if status in (401, 403):
        raise AuthorizationFailed(f"not authorized (HTTP {status})", provider_name)
    if status == 404:
        raise SymbolNotFound("not found (HTTP 404)", provider_name)
    if 400 <= status < 500:
        raise InvalidRequest(f"rejected request (HTTP {status})", provider_name)
    if status >= 500:
        raise ServerError(f"server error (HTTP {status})", provider_name, status_code=status)

    try:
        return resp.json()
    except ValueError as exc:
        raise DecodeError(f"response is not JSON: {exc}", provider_name) from exc


def to_float(x: Any) -> Optional[float]:
    """Parse numbers that may arrive as strings, with a trailing % allowed."""
    if x is None:
        return None
    if isinstance(x, str):
        x = x.strip().rstrip("%").strip()
        if not x:
            return None
    try:
        return float(x)
    except (TypeError, ValueError):
        return None

