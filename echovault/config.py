"""Global configuration for EchoVault."""

from __future__ import annotations

import copy
import json
import os
from typing import Dict, Any


# USD per 1M tokens
DEFAULT_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4.1-2025-04-14": {"input": 5.00, "output": 15.00},
    "text-embedding-3-small": {"input": 0.02, "output": 0.0},
    "claude-3-5-haiku-latest": {"input": 0.80, "output": 4.00},
}

DEFAULT_MODELS: Dict[str, str] = {
    "cheap": "gpt-4o-mini",
    "strong": "gpt-4.1-2025-04-14",
    "embedding": "text-embedding-3-small",
}

DEFAULT_DAILY_LIMIT_USD = 0.50

CHAT_CACHE_TTL_SECONDS = 7 * 24 * 3600
EMBED_CACHE_TTL_SECONDS = 30 * 24 * 3600

# Classifier thresholds by user tier
TIER_THRESHOLDS: Dict[str, float] = {
    "pro": 0.6,
    "free": 0.75,
}

_pricing: Dict[str, Dict[str, float]] = copy.deepcopy(DEFAULT_PRICING)
_models: Dict[str, str] = copy.deepcopy(DEFAULT_MODELS)


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def get_pricing() -> Dict[str, Dict[str, float]]:
    """Return pricing configuration, with optional env override."""
    parsed = _parse_json_env("ECHOVAULT_PRICING_JSON")
    if parsed:
        return parsed
    return _pricing


def set_pricing(pricing: Dict[str, Dict[str, float]]) -> None:
    """Set pricing at runtime."""
    if not isinstance(pricing, dict) or not pricing:
        raise ValueError("pricing must be a non-empty dict")
    for model, rates in pricing.items():
        if not isinstance(rates, dict) or "input" not in rates or "output" not in rates:
            raise ValueError(f"pricing for {model} must include 'input' and 'output'")
    global _pricing
    _pricing = copy.deepcopy(pricing)


def get_models() -> Dict[str, str]:
    """Return model tiers, with optional env override."""
    parsed = _parse_json_env("ECHOVAULT_MODELS_JSON")
    if parsed:
        merged = dict(_models)
        merged.update(parsed)
        return merged
    return _models


def set_models(*, cheap: str | None = None, strong: str | None = None, embedding: str | None = None) -> None:
    """Set model tiers at runtime."""
    global _models
    updated = copy.deepcopy(_models)
    if cheap:
        updated["cheap"] = cheap
    if strong:
        updated["strong"] = strong
    if embedding:
        updated["embedding"] = embedding
    _models = updated


def get_daily_limit() -> float:
    """Default per-user daily limit, overridable with ECHOVAULT_DAILY_BUDGET_USD."""
    value = os.getenv("ECHOVAULT_DAILY_BUDGET_USD")
    if not value:
        return DEFAULT_DAILY_LIMIT_USD
    try:
        limit = float(value)
    except ValueError:
        return DEFAULT_DAILY_LIMIT_USD
    return limit if limit >= 0 else DEFAULT_DAILY_LIMIT_USD


def get_db_path() -> str:
    return os.getenv("ECHOVAULT_DB_PATH", "echovault.db")


def get_cache_path() -> str:
    return os.getenv("ECHOVAULT_CACHE_PATH", "echovault_embeddings.json")


def reset() -> None:
    """Restore default pricing and models."""
    global _pricing, _models
    _pricing = copy.deepcopy(DEFAULT_PRICING)
    _models = copy.deepcopy(DEFAULT_MODELS)
