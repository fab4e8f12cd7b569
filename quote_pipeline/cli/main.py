"""
Top-level CLI dispatcher: quote-pipeline <command> [args...].
Commands: quote, search, providers.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from quote_pipeline.config import get_config, log_level, provider_settings, quote_priority, search_priority
from quote_pipeline.core.errors import QuotePipelineError
from quote_pipeline.providers.base import Quote, SymbolResult
from quote_pipeline.providers.chain import QuoteResolver
from quote_pipeline.providers.defaults import create_quote_resolver

logger = logging.getLogger(__name__)


def _quote_to_dict(q: Quote) -> Dict[str, Any]:
    return {
        "symbol": q.symbol,
        "price": q.current_price,
        "previous_close": q.previous_close,
        "change_percent": q.daily_change_percent,
        "source": q.source.value,
        "provider": q.provider_name,
        "stale": q.is_stale,
        "fetched_at": q.fetched_at.isoformat(timespec="seconds"),
    }


def _fmt_quote(q: Quote) -> str:
    prev = f"{q.previous_close:.2f}" if q.previous_close is not None else "-"
    pct = q.daily_change_percent
    chg = f"{pct:+.2f}%" if pct is not None else "-"
    stale = " (stale)" if q.is_stale else ""
    return f"{q.symbol:<8} {q.current_price:>12.2f} {prev:>12} {chg:>8}  {q.source.value}{stale}"


def _result_to_dict(r: SymbolResult) -> Dict[str, Any]:
    return {
        "symbol": r.symbol,
        "name": r.name,
        "type": r.type,
        "region": r.region,
        "currency": r.currency,
        "provider": r.provider_name,
    }


def _cmd_quote(args: argparse.Namespace, resolver: QuoteResolver) -> int:
    try:
        results = resolver.resolve_many(args.symbols, timeout=args.timeout, force_refresh=args.force_refresh)
    except QuotePipelineError as exc:
        print(f"Quote failed: {exc}", file=sys.stderr)
        return 1
    if not results:
        print("No symbols given", file=sys.stderr)
        return 1
    failed = 0
    payload: Dict[str, Any] = {}
    for sym, res in results.items():
        if isinstance(res, Quote):
            payload[sym] = _quote_to_dict(res)
        else:
            failed += 1
            payload[sym] = {"error": str(res)}

    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        for sym, res in results.items():
            if isinstance(res, Quote):
                print(_fmt_quote(res))
            else:
                print(f"{sym:<8} ERROR {res}")
    return 1 if failed else 0


def _cmd_search(args: argparse.Namespace, resolver: QuoteResolver) -> int:
    try:
        results = resolver.search_symbols(args.query, timeout=args.timeout)
    except QuotePipelineError as exc:
        print(f"Search failed: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([_result_to_dict(r) for r in results], indent=2))
    elif not results:
        print(f"No matches for '{args.query}'")
    else:
        for r in results:
            extra = ", ".join(x for x in (r.type, r.region, r.currency) if x)
            print(f"{r.symbol:<12} {r.name}" + (f"  [{extra}]" if extra else ""))
    return 0


def _cmd_providers(args: argparse.Namespace, cfg: dict) -> int:
    rows: List[Dict[str, Any]] = []
    for role, names in (("quote", quote_priority(cfg)), ("search", search_priority(cfg))):
        for position, name in enumerate(names, start=1):
            settings = provider_settings(name, cfg)
            rl = settings.get("rate_limit") or {}
            rows.append({
                "role": role,
                "position": position,
                "provider": name,
                "calls": rl.get("calls"),
                "window_s": rl.get("window_s"),
                "cache_ttl_s": settings.get("cache_ttl_s"),
            })

    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    for row in rows:
        quota = f"{row['calls']}/{row['window_s']}s" if row["calls"] else "unlimited"
        ttl = f"ttl={row['cache_ttl_s']}s" if row["role"] == "quote" and row["cache_ttl_s"] else ""
        print(f"{row['role']:<7} {row['position']}. {row['provider']:<14} {quota:<12} {ttl}".rstrip())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quote-pipeline",
        description="Resolve stock quotes across providers with caching and failover",
    )
    subparsers = parser.add_subparsers(dest="command", help="command")

    p_quote = subparsers.add_parser("quote", help="Resolve one or more symbols")
    p_quote.add_argument("symbols", nargs="+", help="Ticker symbols, e.g. AAPL MSFT")
    p_quote.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    p_quote.add_argument("--force-refresh", action="store_true", help="Bypass the quote cache")
    p_quote.add_argument("--json", action="store_true", help="Print JSON")

    p_search = subparsers.add_parser("search", help="Search symbols by name or ticker")
    p_search.add_argument("query")
    p_search.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds")
    p_search.add_argument("--json", action="store_true", help="Print JSON")

    p_prov = subparsers.add_parser("providers", help="Show configured provider chain and quotas")
    p_prov.add_argument("--json", action="store_true", help="Print JSON")
    return parser


def main(argv: Optional[List[str]] = None, resolver: Optional[QuoteResolver] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    cfg = get_config()
    logging.basicConfig(
        level=getattr(logging, log_level(cfg), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "providers":
        return _cmd_providers(args, cfg)

    resolver = resolver or create_quote_resolver(cfg=cfg)
    if args.command == "quote":
        return _cmd_quote(args, resolver)
    return _cmd_search(args, resolver)


if __name__ == "__main__":
    sys.exit(main())
