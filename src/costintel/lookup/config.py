"""Configuration for the online price lookup tiers."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

import yaml

LOGGER = logging.getLogger(__name__)

_BOOLEAN_TRUE = {"1", "true", "yes", "on"}

DEFAULT_SPOT_URL = "https://api.metals.live/v1/spot"
DEFAULT_FX_URL = "https://api.metalpriceapi.com/v1/latest"
DEFAULT_FREE_SEARCH_URL = "https://api.duckduckgo.com/"
SERPAPI_URL = "https://serpapi.com/search"
BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"

# Fallback order for keyed providers.
KEYED_PROVIDER_ORDER = ("serpapi", "brave", "google_cse")


@dataclass
class RetryPolicy:
    """Timeout/retry/backoff policy for one provider."""

    timeout_seconds: float = 8.0
    retries: int = 0
    backoff_factor: float = 0.0
    circuit_breaker_failures: int = 3

    @classmethod
    def from_dict(cls, raw: Optional[dict], default_timeout: float = 8.0) -> "RetryPolicy":
        raw = raw or {}
        return cls(
            timeout_seconds=float(raw.get("timeout_seconds", default_timeout)),
            retries=int(raw.get("retries", 0)),
            backoff_factor=float(raw.get("backoff_factor", 0.0)),
            circuit_breaker_failures=int(raw.get("circuit_breaker_failures", 3)),
        )


@dataclass
class CommodityFeedConfig:
    enabled: bool = True
    spot_url: str = DEFAULT_SPOT_URL
    fx_url: str = DEFAULT_FX_URL
    fx_api_key: Optional[str] = None
    # Reporting-currency units per USD when no live rate is available.
    usd_exchange_rate: float = 0.385
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(timeout_seconds=6.0))


@dataclass
class ReferenceTableConfig:
    enabled: bool = True
    path: Optional[Path] = None
    replace_defaults: bool = False


@dataclass
class FreeSearchConfig:
    enabled: bool = True
    endpoint: str = DEFAULT_FREE_SEARCH_URL
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(timeout_seconds=8.0))


@dataclass
class SearchProviderConfig:
    name: str
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    engine_id: Optional[str] = None
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(timeout_seconds=10.0))

    @property
    def configured(self) -> bool:
        if not self.api_key:
            return False
        if self.name == "google_cse":
            return bool(self.engine_id)
        return True


@dataclass
class LookupConfig:
    currency: str = "OMR"
    currency_markers: List[str] = field(default_factory=lambda: ["OMR", "RO", "ر.ع"])
    search_region: str = "oman"
    min_price: float = 0.0
    max_price: float = 50000.0
    commodity: CommodityFeedConfig = field(default_factory=CommodityFeedConfig)
    reference: ReferenceTableConfig = field(default_factory=ReferenceTableConfig)
    free_search: FreeSearchConfig = field(default_factory=FreeSearchConfig)
    search_providers: List[SearchProviderConfig] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path | None = None, env: Mapping[str, str] | None = None) -> "LookupConfig":
        """Load configuration from a YAML/JSON file, or from the environment alone."""

        if path is None:
            return cls.from_dict({}, env=env)
        if not path.exists():
            raise FileNotFoundError(f"Lookup configuration file not found: {path}")
        with path.open("r", encoding="utf-8") as f:
            if path.suffix.lower() in {".yaml", ".yml"}:
                raw = yaml.safe_load(f) or {}
            else:
                raw = json.load(f)
        LOGGER.debug("Loaded lookup configuration from %s", path)
        return cls.from_dict(raw, env=env)

    @classmethod
    def from_dict(cls, raw: dict, env: Mapping[str, str] | None = None) -> "LookupConfig":
        env = os.environ if env is None else env
        commodity = raw.get("commodity") or {}
        reference = raw.get("reference") or {}
        free_search = raw.get("free_search") or {}
        providers = raw.get("search_providers") or {}

        commodity_cfg = CommodityFeedConfig(
            enabled=bool(commodity.get("enabled", True)) and not _flag(env.get("DISABLE_COMMODITY_FEED")),
            spot_url=env.get("COMMODITY_FEED_URL") or commodity.get("spot_url", DEFAULT_SPOT_URL),
            fx_url=commodity.get("fx_url", DEFAULT_FX_URL),
            fx_api_key=env.get("METALPRICES_API_KEY") or commodity.get("fx_api_key"),
            usd_exchange_rate=float(env.get("USD_EXCHANGE_RATE") or commodity.get("usd_exchange_rate", 0.385)),
            retry=RetryPolicy.from_dict(commodity.get("retry"), default_timeout=6.0),
        )

        reference_path = env.get("REFERENCE_PRICES_PATH") or reference.get("path")
        reference_cfg = ReferenceTableConfig(
            enabled=bool(reference.get("enabled", True)),
            path=Path(reference_path).expanduser() if reference_path else None,
            replace_defaults=bool(reference.get("replace_defaults", False)),
        )

        free_search_cfg = FreeSearchConfig(
            enabled=bool(free_search.get("enabled", True)) and not _flag(env.get("DISABLE_FREE_SEARCH")),
            endpoint=free_search.get("endpoint", DEFAULT_FREE_SEARCH_URL),
            retry=RetryPolicy.from_dict(free_search.get("retry"), default_timeout=8.0),
        )

        provider_cfgs = [
            SearchProviderConfig(
                name="serpapi",
                api_key=env.get("SERPAPI_KEY") or (providers.get("serpapi") or {}).get("api_key"),
                endpoint=(providers.get("serpapi") or {}).get("endpoint", SERPAPI_URL),
                retry=RetryPolicy.from_dict((providers.get("serpapi") or {}).get("retry"), default_timeout=10.0),
            ),
            SearchProviderConfig(
                name="brave",
                api_key=env.get("BRAVE_SEARCH_API_KEY") or (providers.get("brave") or {}).get("api_key"),
                endpoint=(providers.get("brave") or {}).get("endpoint", BRAVE_URL),
                retry=RetryPolicy.from_dict((providers.get("brave") or {}).get("retry"), default_timeout=10.0),
            ),
            SearchProviderConfig(
                name="google_cse",
                api_key=env.get("GOOGLE_CSE_KEY") or (providers.get("google_cse") or {}).get("api_key"),
                engine_id=env.get("GOOGLE_CSE_ID") or (providers.get("google_cse") or {}).get("engine_id"),
                endpoint=(providers.get("google_cse") or {}).get("endpoint", GOOGLE_CSE_URL),
                retry=RetryPolicy.from_dict((providers.get("google_cse") or {}).get("retry"), default_timeout=10.0),
            ),
        ]

        markers = raw.get("currency_markers")
        return cls(
            currency=str(env.get("REPORTING_CURRENCY") or raw.get("currency", "OMR")).upper(),
            currency_markers=list(markers) if markers else ["OMR", "RO", "ر.ع"],
            search_region=str(raw.get("search_region", "oman")),
            min_price=float(raw.get("min_price", 0.0)),
            max_price=float(raw.get("max_price", 50000.0)),
            commodity=commodity_cfg,
            reference=reference_cfg,
            free_search=free_search_cfg,
            search_providers=provider_cfgs,
        )

    @property
    def configured_providers(self) -> List[SearchProviderConfig]:
        by_name = {p.name: p for p in self.search_providers if p.configured}
        return [by_name[name] for name in KEYED_PROVIDER_ORDER if name in by_name]


def _flag(value: object | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _BOOLEAN_TRUE


__all__ = [
    "CommodityFeedConfig",
    "FreeSearchConfig",
    "LookupConfig",
    "ReferenceTableConfig",
    "RetryPolicy",
    "SearchProviderConfig",
]
