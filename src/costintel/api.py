from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .catalog import PriceCatalog, load_aliases
from .config import Config, load_config
from .db import create_db_engine, make_session_factory
from .dissect import OpenAIDissector, SingleLineDissector
from .estimator import CostEngine
from .lookup import LookupConfig, OnlineLookupCascade
from .lookup.base import Fetcher
from .models import CostEstimate, utcnow
from .price_logic import PriceResolver

LOGGER = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything wired together for one database."""

    config: Config
    engine: Engine
    session_factory: sessionmaker
    catalog: PriceCatalog
    cascade: OnlineLookupCascade
    resolver: PriceResolver
    cost_engine: CostEngine

    def close(self) -> None:
        self.engine.dispose()


def _make_dissector(config: Config) -> Any:
    if config.disable_ai or not config.openai_api_key:
        LOGGER.debug("BOM dissection model disabled; descriptions become single-line estimates")
        return SingleLineDissector()
    return OpenAIDissector(api_key=config.openai_api_key, model=config.openai_model)


def build_services(
    config: Optional[Config] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    lookup_config: Optional[LookupConfig] = None,
    fetcher: Fetcher | None = None,
    dissector: Any = None,
    clock: Callable = utcnow,
) -> Services:
    env = os.environ if env is None else env
    config = config or load_config(env)
    if lookup_config is None:
        lookup_config = LookupConfig.load(config.lookup_config_path, env=env)

    engine = create_db_engine(config.database_url)
    session_factory = make_session_factory(engine)
    aliases = load_aliases(config.aliases_csv) if config.aliases_csv else None
    catalog = PriceCatalog(
        session_factory,
        clock=clock,
        aliases=aliases,
        online_ttl_hours=config.online_price_ttl_hours,
    )
    cascade = OnlineLookupCascade.from_config(
        catalog,
        lookup_config,
        ttl_hours=config.online_price_ttl_hours,
        fetcher=fetcher,
    )
    resolver = PriceResolver(catalog, cascade, observation_window=config.observation_window)
    cost_engine = CostEngine(
        session_factory,
        resolver,
        labour_rate_flat=config.labour_rate_flat,
        overhead_percent=config.overhead_percent,
        target_margin_percent=config.target_margin_percent,
        dissector=dissector or _make_dissector(config),
        workers=config.resolve_workers,
        clock=clock,
    )
    LOGGER.debug("Online lookup tiers available: %s", ", ".join(cascade.available_tiers()) or "none")
    return Services(
        config=config,
        engine=engine,
        session_factory=session_factory,
        catalog=catalog,
        cascade=cascade,
        resolver=resolver,
        cost_engine=cost_engine,
    )


@dataclass
class EstimateOptions:
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    client_name: Optional[str] = None
    bom_lines: Optional[Iterable[Dict[str, Any]]] = None
    selling_price: Optional[float] = None
    database_url: Optional[str] = None
    disable_ai: bool = True


def estimate(options: EstimateOptions) -> CostEstimate:
    """Programmatic interface: build one estimate against the configured catalog."""

    env = dict(os.environ)
    if options.database_url:
        env["DATABASE_URL"] = options.database_url
    if options.disable_ai:
        env["DISABLE_OPENAI"] = "1"
    services = build_services(load_config(env), env=env)
    try:
        return services.cost_engine.create_estimate(
            options.title,
            description=options.description,
            category=options.category,
            client_name=options.client_name,
            bom_lines=options.bom_lines,
            selling_price=options.selling_price,
        )
    finally:
        services.close()


__all__ = ["EstimateOptions", "Services", "build_services", "estimate"]
