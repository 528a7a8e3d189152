"""
Engine configuration — environment + optional YAML file
=======================================================
Precedence (lowest → highest): dataclass defaults, YAML file, AI_GOV_* env vars.

YAML schema (every section optional):

    db_path: ./governance.db
    ewma_decay: 0.9
    router:
      max_attempts: 2
      attempt_timeout_seconds: 30
      recency_decay_days: 30       # 0 disables posterior recency decay
      forecast_routing: true       # adjust weights from the stored summary
      diversity_threshold: 95      # usage % that engages the diversity guard
      diversity_epsilon: 0.15
    rate_limits:
      per_user: 30
      per_tenant: 200
      window_minutes: 10
    catalog:                       # scope → ordered "provider/model" list
      default: [google/gemini-2.5-flash, openai/gpt-4o-mini]
      question_generation: [google/gemini-2.5-pro, openai/gpt-4o]
    pricing:                       # USD per 1M tokens
      openai/gpt-4o: {input: 2.5, output: 10.0}
    providers:
      openai:  {api_key_env: OPENAI_API_KEY}
      google:  {api_key_env: GEMINI_API_KEY,
                base_url: "https://generativelanguage.googleapis.com/v1beta/openai/"}
    api_keys_file: ./api_keys.yaml
    tracing:
      enabled: false
      service_name: ai-governance-engine
      environment: production
      otlp_endpoint: null          # OTLP/gRPC collector; needs the tracing extra
      sample_rate: 1.0

Environment overrides: AI_GOV_CONFIG (path of the YAML file), AI_GOV_DB_PATH,
AI_GOV_EWMA_DECAY, AI_GOV_MAX_ATTEMPTS, AI_GOV_ATTEMPT_TIMEOUT,
AI_GOV_API_KEYS_FILE.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from .models import COST_TABLE, DEFAULT_CATALOG, Provider
from .tracing import TracingConfig

logger = logging.getLogger("ai_governance.config")

DEFAULT_DB_PATH = Path.home() / ".ai_governance" / "governance.db"

_TOP_LEVEL_KEYS = {
    "db_path", "ewma_decay", "router", "rate_limits", "catalog",
    "pricing", "providers", "api_keys_file", "tracing",
}


@dataclass(frozen=True)
class ProviderEndpoint:
    api_key_env: str
    base_url: Optional[str] = None


DEFAULT_ENDPOINTS: dict[Provider, ProviderEndpoint] = {
    Provider.OPENAI: ProviderEndpoint(api_key_env="OPENAI_API_KEY"),
    Provider.GOOGLE: ProviderEndpoint(
        api_key_env="GEMINI_API_KEY",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
    ),
    Provider.ANTHROPIC: ProviderEndpoint(
        api_key_env="ANTHROPIC_API_KEY",
        base_url="https://api.anthropic.com/v1/",
    ),
}


@dataclass
class EngineConfig:
    db_path: Path = DEFAULT_DB_PATH
    ewma_decay: float = 0.9

    max_attempts: int = 2
    attempt_timeout_seconds: float = 30.0
    recency_decay_days: float = 30.0
    forecast_routing: bool = True
    diversity_threshold: float = 95.0
    diversity_epsilon: float = 0.15

    rate_limit_per_user: int = 30
    rate_limit_per_tenant: int = 200
    rate_limit_window_minutes: int = 10

    catalog: dict[str, list[tuple[Provider, str]]] = field(default_factory=dict)
    default_catalog: list[tuple[Provider, str]] = field(
        default_factory=lambda: list(DEFAULT_CATALOG))
    pricing: dict[tuple[Provider, str], dict[str, float]] = field(
        default_factory=lambda: dict(COST_TABLE))
    providers: dict[Provider, ProviderEndpoint] = field(
        default_factory=lambda: dict(DEFAULT_ENDPOINTS))

    api_keys_file: Optional[Path] = None
    tracing: TracingConfig = field(default_factory=TracingConfig)

    def __post_init__(self) -> None:
        if not 0.0 < self.ewma_decay < 1.0:
            raise ValueError(f"ewma_decay must be in (0, 1), got {self.ewma_decay}")
        if self.max_attempts < 1:
            raise ValueError("router.max_attempts must be >= 1")
        if self.attempt_timeout_seconds <= 0:
            raise ValueError("router.attempt_timeout_seconds must be > 0")
        if self.recency_decay_days < 0:
            raise ValueError("router.recency_decay_days must be >= 0")
        if not 0.0 <= self.diversity_threshold <= 100.0:
            raise ValueError("router.diversity_threshold must be in [0, 100]")
        if not 0.0 <= self.diversity_epsilon <= 1.0:
            raise ValueError("router.diversity_epsilon must be in [0, 1]")
        if self.rate_limit_per_user < 1 or self.rate_limit_per_tenant < 1:
            raise ValueError("rate limits must be >= 1")
        if not 1 <= self.rate_limit_window_minutes <= 60:
            raise ValueError("rate_limits.window_minutes must be in [1, 60]")

    def candidates_for(self, scope: str) -> list[tuple[Provider, str]]:
        return list(self.catalog.get(scope) or self.default_catalog)


# ─────────────────────────────────────────────────────────────────────────────
# Loader
# ─────────────────────────────────────────────────────────────────────────────

def load_config(path: Optional[str | Path] = None) -> EngineConfig:
    """
    Build an EngineConfig from .env, an optional YAML file and AI_GOV_* vars.

    Raises
    ------
    FileNotFoundError  — an explicit config path does not exist
    ValueError         — unknown keys or invalid values
    """
    load_dotenv(override=False)

    path = path or os.environ.get("AI_GOV_CONFIG")
    raw: dict[str, Any] = {}
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        if not isinstance(raw, dict):
            raise ValueError("Config file must contain a mapping")
        unknown = set(raw) - _TOP_LEVEL_KEYS
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = {}

    if "db_path" in raw:
        kwargs["db_path"] = Path(raw["db_path"]).expanduser()
    if "ewma_decay" in raw:
        kwargs["ewma_decay"] = float(raw["ewma_decay"])

    router = _section(raw, "router", {
        "max_attempts", "attempt_timeout_seconds", "recency_decay_days",
        "forecast_routing", "diversity_threshold", "diversity_epsilon",
    })
    if "max_attempts" in router:
        kwargs["max_attempts"] = int(router["max_attempts"])
    if "attempt_timeout_seconds" in router:
        kwargs["attempt_timeout_seconds"] = float(router["attempt_timeout_seconds"])
    for key in ("recency_decay_days", "diversity_threshold", "diversity_epsilon"):
        if key in router:
            kwargs[key] = float(router[key])
    if "forecast_routing" in router:
        kwargs["forecast_routing"] = bool(router["forecast_routing"])

    limits = _section(raw, "rate_limits", {"per_user", "per_tenant", "window_minutes"})
    if "per_user" in limits:
        kwargs["rate_limit_per_user"] = int(limits["per_user"])
    if "per_tenant" in limits:
        kwargs["rate_limit_per_tenant"] = int(limits["per_tenant"])
    if "window_minutes" in limits:
        kwargs["rate_limit_window_minutes"] = int(limits["window_minutes"])

    catalog_raw = _section(raw, "catalog", None)
    if catalog_raw:
        catalog = {
            str(scope): [parse_arm_ref(ref) for ref in refs]
            for scope, refs in catalog_raw.items()
        }
        if "default" in catalog:
            kwargs["default_catalog"] = catalog.pop("default")
        kwargs["catalog"] = catalog

    pricing_raw = _section(raw, "pricing", None)
    if pricing_raw:
        pricing = dict(COST_TABLE)
        for ref, prices in pricing_raw.items():
            if not isinstance(prices, dict) or set(prices) != {"input", "output"}:
                raise ValueError(f"pricing.{ref} must have exactly 'input' and 'output'")
            pricing[parse_arm_ref(ref)] = {
                "input": float(prices["input"]), "output": float(prices["output"]),
            }
        kwargs["pricing"] = pricing

    providers_raw = _section(raw, "providers", None)
    if providers_raw:
        endpoints = dict(DEFAULT_ENDPOINTS)
        for name, entry in providers_raw.items():
            provider = _parse_provider(name)
            entry = entry or {}
            unknown = set(entry) - {"api_key_env", "base_url"}
            if unknown:
                raise ValueError(f"Unknown keys in providers.{name}: {sorted(unknown)}")
            default = endpoints[provider]
            endpoints[provider] = ProviderEndpoint(
                api_key_env=entry.get("api_key_env", default.api_key_env),
                base_url=entry.get("base_url", default.base_url),
            )
        kwargs["providers"] = endpoints

    if raw.get("api_keys_file"):
        kwargs["api_keys_file"] = Path(raw["api_keys_file"]).expanduser()

    tracing = _section(raw, "tracing", {
        "enabled", "service_name", "otlp_endpoint", "sample_rate", "environment",
    })
    if tracing:
        kwargs["tracing"] = TracingConfig(**tracing)

    # ── Environment overrides ────────────────────────────────────────────────
    env = os.environ
    if env.get("AI_GOV_DB_PATH"):
        kwargs["db_path"] = Path(env["AI_GOV_DB_PATH"]).expanduser()
    if env.get("AI_GOV_EWMA_DECAY"):
        kwargs["ewma_decay"] = float(env["AI_GOV_EWMA_DECAY"])
    if env.get("AI_GOV_MAX_ATTEMPTS"):
        kwargs["max_attempts"] = int(env["AI_GOV_MAX_ATTEMPTS"])
    if env.get("AI_GOV_ATTEMPT_TIMEOUT"):
        kwargs["attempt_timeout_seconds"] = float(env["AI_GOV_ATTEMPT_TIMEOUT"])
    if env.get("AI_GOV_API_KEYS_FILE"):
        kwargs["api_keys_file"] = Path(env["AI_GOV_API_KEYS_FILE"]).expanduser()

    config = EngineConfig(**kwargs)
    logger.debug("Loaded engine config (db=%s, decay=%.2f)", config.db_path, config.ewma_decay)
    return config


def parse_arm_ref(ref: str) -> tuple[Provider, str]:
    """Parse "provider/model" into (Provider, model)."""
    if not isinstance(ref, str) or "/" not in ref:
        raise ValueError(f"Expected 'provider/model', got {ref!r}")
    provider, model = ref.split("/", 1)
    if not model:
        raise ValueError(f"Missing model in {ref!r}")
    return _parse_provider(provider), model


def _parse_provider(name: str) -> Provider:
    try:
        return Provider(str(name).lower())
    except ValueError:
        valid = [p.value for p in Provider]
        raise ValueError(f"Unknown provider {name!r}; expected one of {valid}")


def _section(raw: dict, key: str, allowed: Optional[set[str]]) -> dict:
    data = raw.get(key) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{key}' must be a mapping")
    if allowed is not None:
        unknown = set(data) - allowed
        if unknown:
            raise ValueError(f"Unknown keys in {key}: {sorted(unknown)}")
    return data
