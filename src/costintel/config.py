from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import Mapping, Optional


_BOOLEAN_TRUE = {"1", "true", "yes", "on"}

DEFAULT_DATABASE_URL = "sqlite:///costintel.db"


@dataclass(frozen=True)
class Config:
    """Runtime configuration assembled from environment variables and CLI options."""

    database_url: str = DEFAULT_DATABASE_URL
    target_margin_percent: float = 25.0
    labour_rate_flat: float = 15.0
    overhead_percent: float = 10.0
    online_price_ttl_hours: float = 24.0
    currency: str = "OMR"
    observation_window: int = 20
    resolve_workers: int = 1
    aliases_csv: Optional[Path] = None
    lookup_config_path: Optional[Path] = None
    disable_ai: bool = False
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    verbose: bool = False

    @property
    def overhead_fraction(self) -> float:
        return self.overhead_percent / 100.0


def _to_path(value: object | None) -> Optional[Path]:
    if value is None:
        return None
    if isinstance(value, Path):
        return value.expanduser().resolve()
    text = str(value).strip()
    if not text:
        return None
    return Path(text).expanduser().resolve()


def _to_int(value: object | None) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


def _to_float(value: object | None) -> Optional[float]:
    if value is None:
        return None
    text = str(value).replace("%", "").replace(",", "").strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _flag(value: object | None) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _BOOLEAN_TRUE


def _first(env: Mapping[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        value = env.get(key)
        if value is not None and str(value).strip():
            return value
    return None


def _namespace(cli_args: object | None) -> SimpleNamespace:
    if cli_args is None:
        return SimpleNamespace()
    if isinstance(cli_args, SimpleNamespace):
        return cli_args
    if hasattr(cli_args, "__dict__"):
        return SimpleNamespace(**{k: v for k, v in vars(cli_args).items()})
    return SimpleNamespace()


def load_config(env: Mapping[str, str], cli_args: object | None = None) -> Config:
    """Build a runtime :class:`Config` from environment variables and CLI options."""

    defaults = Config()

    database_url = (env.get("DATABASE_URL") or "").strip() or defaults.database_url
    target_margin = _to_float(_first(env, "TARGET_MARGIN_PERCENT", "MARGIN_TARGET_PERCENT"))
    labour_rate = _to_float(_first(env, "LABOUR_RATE_FLAT", "LABOUR_RATE_DEFAULT"))
    overhead = _to_float(_first(env, "OVERHEAD_PERCENT", "OVERHEAD_PERCENT_DEFAULT"))
    ttl_hours = _to_float(env.get("ONLINE_PRICE_TTL_HOURS"))
    currency = (env.get("REPORTING_CURRENCY") or "").strip().upper() or defaults.currency
    observation_window = _to_int(env.get("OBSERVATION_WINDOW")) or defaults.observation_window
    resolve_workers = _to_int(env.get("RESOLVE_WORKERS")) or defaults.resolve_workers
    aliases_csv = _to_path(env.get("MATERIAL_ALIASES_CSV"))
    lookup_config_path = _to_path(env.get("LOOKUP_CONFIG"))
    disable_ai = _flag(env.get("DISABLE_OPENAI"))
    openai_api_key = (env.get("OPENAI_API_KEY") or "").strip() or None
    openai_model = (env.get("OPENAI_MODEL") or "").strip() or defaults.openai_model
    verbose = False

    cli_ns = _namespace(cli_args)
    if getattr(cli_ns, "database_url", None):
        database_url = str(cli_ns.database_url)
    if getattr(cli_ns, "target_margin", None) is not None:
        target_margin = float(cli_ns.target_margin)
    if getattr(cli_ns, "labour_rate", None) is not None:
        labour_rate = float(cli_ns.labour_rate)
    if getattr(cli_ns, "overhead_percent", None) is not None:
        overhead = float(cli_ns.overhead_percent)
    if getattr(cli_ns, "lookup_config", None):
        lookup_config_path = _to_path(cli_ns.lookup_config)
    if getattr(cli_ns, "aliases_csv", None):
        aliases_csv = _to_path(cli_ns.aliases_csv)
    if getattr(cli_ns, "workers", None) is not None:
        resolve_workers = max(1, int(cli_ns.workers))
    if getattr(cli_ns, "disable_ai", False):
        disable_ai = True
    if getattr(cli_ns, "verbose", False):
        verbose = bool(cli_ns.verbose)

    config = Config(
        database_url=database_url,
        target_margin_percent=defaults.target_margin_percent if target_margin is None else target_margin,
        labour_rate_flat=defaults.labour_rate_flat if labour_rate is None else labour_rate,
        overhead_percent=defaults.overhead_percent if overhead is None else overhead,
        online_price_ttl_hours=defaults.online_price_ttl_hours if ttl_hours is None else ttl_hours,
        currency=currency,
        observation_window=max(1, observation_window),
        resolve_workers=max(1, resolve_workers),
        aliases_csv=aliases_csv,
        lookup_config_path=lookup_config_path,
        disable_ai=disable_ai,
        openai_api_key=openai_api_key,
        openai_model=openai_model,
        verbose=verbose,
    )
    validate_config(config)
    return config


def validate_config(config: Config) -> None:
    if config.labour_rate_flat < 0:
        raise ValueError(f"labour rate must be non-negative, got {config.labour_rate_flat}")
    if config.overhead_percent < 0:
        raise ValueError(f"overhead percent must be non-negative, got {config.overhead_percent}")
    if config.online_price_ttl_hours <= 0:
        raise ValueError(f"online price TTL must be positive, got {config.online_price_ttl_hours}")


__all__ = ["Config", "DEFAULT_DATABASE_URL", "load_config", "validate_config"]
