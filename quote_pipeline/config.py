"""
Load config from config.yaml with optional env overrides.
Single source of truth for provider priority, quotas, cache lifetimes,
retry policy and logging level.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# Defaults if no YAML or env
_DEFAULTS: Dict[str, Any] = {
    "providers": {
        "quote_priority": ["yahoo", "alphavantage"],
        "search_priority": ["alphavantage", "yahoo"],
        "yahoo": {
            "base_url": "https://query1.finance.yahoo.com",
            "cache_ttl_s": 300,
            "timeout_multiplier": 1.0,
            "rate_limit": {"calls": 60, "window_s": 60},
        },
        "alphavantage": {
            "base_url": "https://www.alphavantage.co/query",
            "api_key": "",
            "cache_ttl_s": 600,
            "timeout_multiplier": 1.5,
            "rate_limit": {"calls": 5, "window_s": 60},
        },
    },
    "retry": {
        "max_retries": 3,
        "base_delay_s": 0.5,
        "max_delay_s": 10.0,
        "backoff_factor": 2.0,
    },
    "resolver": {
        "default_timeout_s": 10.0,
        "disable_cooldown_s": 600,
        "failure_threshold": 3,
        "breaker_cooldown_s": 60,
        "search_cache_ttl_s": 3600,
        "dedupe_inflight": False,
        "max_workers": 8,
    },
    "cache": {"max_entries": 1000},
    "logging": {"level": "INFO"},
}


def _config_yaml_path() -> Path:
    """QUOTE_PIPELINE_CONFIG if set, else config.yaml at repo root (parent of package dir)."""
    override = os.environ.get("QUOTE_PIPELINE_CONFIG")
    if override:
        return Path(override)
    return Path(__file__).resolve().parent.parent / "config.yaml"


def _load_yaml(path: Optional[Path] = None) -> dict:
    config_path = path or _config_yaml_path()
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict, override: dict) -> dict:
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _env_overrides() -> dict:
    overrides: dict = {}
    api_key = os.environ.get("ALPHAVANTAGE_API_KEY")
    if api_key:
        overrides.setdefault("providers", {}).setdefault("alphavantage", {})["api_key"] = api_key
    level = os.environ.get("QUOTE_PIPELINE_LOG_LEVEL")
    if level:
        overrides.setdefault("logging", {})["level"] = level.upper()
    return overrides


def get_config(path: Optional[Path] = None) -> dict:
    """Return merged config: defaults <- config.yaml <- env."""
    merged = _deep_merge(_DEFAULTS, _load_yaml(path))
    merged = _deep_merge(merged, _env_overrides())
    return merged


# Convenience accessors
def quote_priority(cfg: Optional[dict] = None) -> List[str]:
    return list((cfg or get_config())["providers"]["quote_priority"])


def search_priority(cfg: Optional[dict] = None) -> List[str]:
    return list((cfg or get_config())["providers"]["search_priority"])


def provider_settings(name: str, cfg: Optional[dict] = None) -> Dict[str, Any]:
    """Settings block for one provider; empty dict for providers without one."""
    block = (cfg or get_config())["providers"].get(name)
    return dict(block) if isinstance(block, dict) else {}


def alphavantage_api_key(cfg: Optional[dict] = None) -> str:
    return str(provider_settings("alphavantage", cfg).get("api_key") or "")


def log_level(cfg: Optional[dict] = None) -> str:
    return str((cfg or get_config())["logging"]["level"]).upper()


def cache_max_entries(cfg: Optional[dict] = None) -> Optional[int]:
    value = (cfg or get_config())["cache"].get("max_entries")
    return int(value) if value else None
