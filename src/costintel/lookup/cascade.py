"""
Ordered online price lookup.

Tiers run strictly in order and the first one to produce a price wins;
that price is written back to the catalog as an ``ONLINE`` observation
so the next lookup inside the TTL window is served from the cache tier.
A tier that raises is logged and treated as a miss.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from ..catalog import PriceCatalog
from ..models import NO_PRICE_SOURCE, LookupResult, LookupTier, PriceSource, PriceTag
from ..units import normalize_unit
from .base import Fetcher, LookupStrategy, TierQuote
from .commodity import CommodityFeedStrategy
from .config import LookupConfig
from .reference import ReferenceTableStrategy
from .search import FreeSearchStrategy, KeyedSearchStrategy

LOGGER = logging.getLogger(__name__)


class CatalogCacheStrategy(LookupStrategy):
    """Serve an unexpired ONLINE observation already in the catalog."""

    tier = LookupTier.CACHE
    name = "catalog-cache"
    persists = False

    def __init__(self, catalog: PriceCatalog) -> None:
        self.catalog = catalog

    def lookup(self, material_name: str, unit: str) -> Optional[TierQuote]:
        cached = self.catalog.latest_online(material_name)
        if cached is None:
            return None
        return TierQuote(
            unit_price=cached.unit_price,
            confidence=cached.confidence,
            tag=PriceTag(self.tier, cached.detail),
            raw=f"cached until {cached.expires_at:%Y-%m-%d %H:%M}" if cached.expires_at else None,
        )


def default_strategies(
    catalog: PriceCatalog,
    config: LookupConfig,
    fetcher: Fetcher | None = None,
) -> List[LookupStrategy]:
    """Build the standard tier order from ``config``."""

    strategies: List[LookupStrategy] = [
        CatalogCacheStrategy(catalog),
        CommodityFeedStrategy(config.commodity, currency=config.currency, fetcher=fetcher),
        ReferenceTableStrategy.from_config(config.reference),
        FreeSearchStrategy(config.free_search, config, fetcher=fetcher),
    ]
    for provider in config.configured_providers:
        strategies.append(KeyedSearchStrategy(provider, config, fetcher=fetcher))
    return strategies


class OnlineLookupCascade:
    def __init__(
        self,
        catalog: PriceCatalog,
        strategies: Sequence[LookupStrategy],
        ttl_hours: Optional[float] = None,
    ) -> None:
        self.catalog = catalog
        self.strategies = list(strategies)
        self.ttl_hours = ttl_hours if ttl_hours is not None else catalog.online_ttl_hours

    @classmethod
    def from_config(
        cls,
        catalog: PriceCatalog,
        config: LookupConfig,
        ttl_hours: Optional[float] = None,
        fetcher: Fetcher | None = None,
    ) -> "OnlineLookupCascade":
        return cls(catalog, default_strategies(catalog, config, fetcher), ttl_hours=ttl_hours)

    def available_tiers(self) -> List[str]:
        return [s.name for s in self.strategies if s.is_available()]

    def lookup(self, material_name: str, unit: Optional[str] = None) -> LookupResult:
        name = (material_name or "").strip()
        if not name:
            return LookupResult(None, NO_PRICE_SOURCE, 0.0)
        unit = normalize_unit(unit)

        for strategy in self.strategies:
            if not strategy.is_available():
                LOGGER.debug("Skipping unavailable tier %s", strategy.name)
                continue
            try:
                quote = strategy.lookup(name, unit)
            except Exception as exc:
                LOGGER.warning("Price lookup via %s failed for %r: %s", strategy.name, name, exc)
                continue
            if quote is None:
                continue

            LOGGER.info("Online price for %r from %s: %.3f (confidence %.2f)", name, quote.tag, quote.unit_price, quote.confidence)
            if strategy.persists:
                self._write_back(name, unit, quote)
            return LookupResult(
                unit_price=quote.unit_price,
                source=PriceSource.ONLINE.value,
                confidence=quote.confidence,
                tag=quote.tag,
                raw=quote.raw,
            )

        LOGGER.info("No online price found for %r", name)
        return LookupResult(None, NO_PRICE_SOURCE, 0.0)

    def lookup_all(self, names: Iterable[str], unit: Optional[str] = None) -> Dict[str, LookupResult]:
        results: Dict[str, LookupResult] = {}
        for name in names:
            if name in results:
                continue
            results[name] = self.lookup(name, unit)
        return results

    def _write_back(self, name: str, unit: str, quote: TierQuote) -> None:
        try:
            self.catalog.record_price(
                name,
                unit,
                quote.unit_price,
                PriceSource.ONLINE,
                confidence=quote.confidence,
                ttl_hours=self.ttl_hours,
                detail=str(quote.tag),
            )
        except Exception as exc:
            LOGGER.warning("Could not cache online price for %r: %s", name, exc)


__all__ = ["CatalogCacheStrategy", "OnlineLookupCascade", "default_strategies"]
