"""
Source-priority price resolution.

Observations are ranked by source trust (MANUAL > VENDOR_PO > COST_SHEET >
ONLINE).  Only the highest-ranked source present is averaged, so a single
manual price always outranks any number of online quotes.  Confidence
grows with the sample size and shrinks with the relative spread:

    confidence = clamp((0.5 + 0.1 * n) * (1 - std / mean), 0, 1)
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from .catalog import PriceCatalog
from .models import (
    EXPIRED_SOURCE,
    NO_PRICE_SOURCE,
    LookupResult,
    PriceObservation,
    ResolvedPrice,
    round_half_up,
)
from .units import normalize_unit

LOGGER = logging.getLogger(__name__)

DEFAULT_OBSERVATION_WINDOW = 20
BASE_CONFIDENCE = 0.5
CONFIDENCE_PER_OBSERVATION = 0.1


def relative_variance(prices: Sequence[float]) -> float:
    """Population standard deviation divided by the mean (0 for one price or a zero mean)."""

    values = np.asarray(prices, dtype=float)
    if values.size < 2:
        return 0.0
    mean = float(values.mean())
    if mean == 0:
        return 0.0
    return float(values.std(ddof=0)) / mean


def confidence_for(prices: Sequence[float]) -> float:
    n = len(prices)
    if n == 0:
        return 0.0
    raw = (BASE_CONFIDENCE + CONFIDENCE_PER_OBSERVATION * n) * (1.0 - relative_variance(prices))
    return round_half_up(float(np.clip(raw, 0.0, 1.0)), 2)


def summarize_observations(observations: Sequence[PriceObservation]) -> ResolvedPrice:
    """
    Resolve a price from already-valid observations.

    Returns the mean of the highest-priority source subset; an empty input
    yields the "none" result.
    """

    if not observations:
        return ResolvedPrice(0.0, NO_PRICE_SOURCE, 0.0)
    top = max(obs.source.priority for obs in observations)
    subset = [obs for obs in observations if obs.source.priority == top]
    prices = [obs.unit_price for obs in subset]
    return ResolvedPrice(
        unit_price=float(np.mean(prices)),
        source=subset[0].source.value,
        confidence=confidence_for(prices),
        observations_used=len(subset),
    )


class PriceResolver:
    """Resolve the best known unit price for a material name."""

    def __init__(self, catalog: PriceCatalog, cascade=None, observation_window: int = DEFAULT_OBSERVATION_WINDOW) -> None:
        self.catalog = catalog
        self.cascade = cascade
        self.observation_window = max(1, int(observation_window))

    def resolve_price(self, material_name: str, unit: Optional[str] = None) -> ResolvedPrice:
        """
        Resolve ``material_name`` against the catalog, falling back to the
        online cascade.

        ``unit`` is only a hint for materials the catalog has never seen.
        """

        material = self.catalog.find_material(material_name)
        if material is None:
            LOGGER.debug("No catalog material for %r; trying online lookup", material_name)
            return self._from_online(material_name, unit, miss_source=NO_PRICE_SOURCE)

        if not self.catalog.observations_for(material.id, within_ttl=False, limit=1):
            LOGGER.debug("Material %r has no observations; trying online lookup", material.name)
            return self._from_online(material.name, material.unit, miss_source=NO_PRICE_SOURCE)

        sources = self.catalog.valid_sources(material.id)
        if not sources:
            LOGGER.info("All prices for %r have expired; refreshing online", material.name)
            return self._from_online(material.name, material.unit, miss_source=EXPIRED_SOURCE)

        # Priority is decided over every unexpired observation; the window only
        # bounds how many of the winning source's prices are averaged.
        valid = self.catalog.observations_for(
            material.id, within_ttl=True, limit=self.observation_window, source=sources[0]
        )
        resolved = summarize_observations(valid)
        LOGGER.debug(
            "Resolved %r from %d %s observation(s): %.3f (confidence %.2f)",
            material.name,
            resolved.observations_used,
            resolved.source,
            resolved.unit_price,
            resolved.confidence,
        )
        return resolved

    def _from_online(self, name: str, unit: Optional[str], miss_source: str) -> ResolvedPrice:
        result: Optional[LookupResult] = None
        if self.cascade is not None:
            result = self.cascade.lookup(name, normalize_unit(unit))
        if result is None or not result.found:
            return ResolvedPrice(0.0, miss_source, 0.0)
        return ResolvedPrice(
            unit_price=float(result.unit_price),
            source=result.source,
            confidence=result.confidence,
            tag=result.tag,
            observations_used=1,
        )


__all__ = ["PriceResolver", "confidence_for", "relative_variance", "summarize_observations"]
