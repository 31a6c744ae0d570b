"""
Live spot-price tier for base metals.

Spot quotes arrive in USD per troy ounce; they are converted to USD per
metric tonne (32,150.75 troy oz per tonne), then to the reporting currency
per kilogram.  The exchange rate is looked up live when an API key is
configured, otherwise the configured fixed rate is used.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Tuple

from ..models import LookupTier, PriceTag
from .base import Fetcher, NetworkStrategy, TierQuote
from .config import CommodityFeedConfig

LOGGER = logging.getLogger(__name__)

TROY_OUNCES_PER_TONNE = 32150.75

LIVE_RATE_CONFIDENCE = 0.78
FIXED_RATE_CONFIDENCE = 0.75

# keyword -> (feed symbol, display label); first match wins.
COMMODITY_KEYWORDS: Tuple[Tuple[str, str, str], ...] = (
    ("aluminium", "aluminium", "Aluminium"),
    ("aluminum", "aluminium", "Aluminium"),
    ("copper", "copper", "Copper"),
    ("steel", "steel", "Steel"),
    ("iron", "steel", "Steel"),
    ("zinc", "zinc", "Zinc"),
    ("nickel", "nickel", "Nickel"),
    ("lead", "lead", "Lead"),
    ("tin", "tin", "Tin"),
)

# Multiplier from a per-kg price to the requested mass unit.
MASS_UNITS = {"kg": 1.0, "g": 0.001, "gram": 0.001, "tonne": 1000.0, "ton": 1000.0, "t": 1000.0, "mt": 1000.0}


def match_commodity(material_name: str) -> Optional[Tuple[str, str]]:
    lowered = material_name.lower()
    for keyword, symbol, label in COMMODITY_KEYWORDS:
        if re.search(rf"\b{re.escape(keyword)}\b", lowered):
            return symbol, label
    return None


def _spot_price(payload: Any, symbol: str) -> Optional[float]:
    entries = payload if isinstance(payload, list) else [payload]
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        for key, value in entry.items():
            if str(key).lower() == symbol:
                try:
                    price = float(value)
                except (TypeError, ValueError):
                    return None
                return price if price > 0 else None
    return None


class CommodityFeedStrategy(NetworkStrategy):
    tier = LookupTier.COMMODITY
    name = "commodity-feed"

    def __init__(self, config: CommodityFeedConfig, currency: str = "OMR", fetcher: Fetcher | None = None) -> None:
        super().__init__(config.retry, fetcher)
        self.config = config
        self.currency = currency.upper()

    def is_configured(self) -> bool:
        return self.config.enabled and bool(self.config.spot_url)

    def lookup(self, material_name: str, unit: str) -> Optional[TierQuote]:
        commodity = match_commodity(material_name)
        if commodity is None:
            return None
        multiplier = MASS_UNITS.get((unit or "").lower())
        if multiplier is None:
            LOGGER.debug("Commodity feed skipped for %r: unit %r is not a mass unit", material_name, unit)
            return None
        symbol, label = commodity

        usd_per_oz = _spot_price(self.get_json(self.config.spot_url), symbol)
        if usd_per_oz is None:
            LOGGER.debug("Spot feed has no quote for %s", symbol)
            return None
        usd_per_kg = usd_per_oz * TROY_OUNCES_PER_TONNE / 1000.0

        rate, live = self._exchange_rate()
        price = round(usd_per_kg * rate * multiplier, 3)
        return TierQuote(
            unit_price=price,
            confidence=LIVE_RATE_CONFIDENCE if live else FIXED_RATE_CONFIDENCE,
            tag=PriceTag(self.tier, label),
            raw=f"{label} spot {usd_per_oz:.2f} USD/ozt @ {rate:.4f} {self.currency}/USD",
        )

    def _exchange_rate(self) -> Tuple[float, bool]:
        if self.currency == "USD":
            return 1.0, True
        if self.config.fx_api_key and self.config.fx_url:
            try:
                payload = self.get_json(
                    self.config.fx_url,
                    params={"api_key": self.config.fx_api_key, "base": "USD", "currencies": self.currency},
                )
                rate = float((payload.get("rates") or {})[self.currency])
                if rate > 0:
                    return rate, True
            except Exception as exc:
                LOGGER.warning("Exchange-rate lookup failed, using fixed rate: %s", exc)
        return self.config.usd_exchange_rate, False


__all__ = ["COMMODITY_KEYWORDS", "CommodityFeedStrategy", "TROY_OUNCES_PER_TONNE", "match_commodity"]
