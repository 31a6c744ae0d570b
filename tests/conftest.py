from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

import pytest

from costintel.catalog import PriceCatalog
from costintel.db import create_db_engine, make_session_factory
from costintel.estimator import CostEngine
from costintel.lookup import CatalogCacheStrategy, OnlineLookupCascade, ReferenceTableStrategy
from costintel.lookup.base import LookupStrategy, TierQuote
from costintel.models import LookupTier, PriceTag
from costintel.price_logic import PriceResolver


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, hours: float) -> None:
        self.current += timedelta(hours=hours)


class StubTier(LookupStrategy):
    """Tier returning a canned price (or raising) and recording its calls."""

    def __init__(
        self,
        price: Optional[float] = None,
        confidence: float = 0.5,
        tier: LookupTier = LookupTier.FREE_SEARCH,
        name: str = "stub",
        error: Optional[Exception] = None,
        available: bool = True,
    ) -> None:
        self.price = price
        self.confidence = confidence
        self.tier = tier
        self.name = name
        self.error = error
        self.available = available
        self.calls: List[tuple] = []

    def is_available(self) -> bool:
        return self.available

    def lookup(self, material_name: str, unit: str) -> Optional[TierQuote]:
        self.calls.append((material_name, unit))
        if self.error is not None:
            raise self.error
        if self.price is None:
            return None
        return TierQuote(self.price, self.confidence, PriceTag(self.tier, self.name))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 9, 0, 0))


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def catalog(session_factory, clock) -> PriceCatalog:
    return PriceCatalog(session_factory, clock=clock, online_ttl_hours=24.0)


@pytest.fixture
def stub_tier() -> Callable[..., StubTier]:
    return StubTier


@pytest.fixture
def offline_cascade(catalog) -> OnlineLookupCascade:
    """Cache and built-in reference table only; never touches the network."""

    return OnlineLookupCascade(catalog, [CatalogCacheStrategy(catalog), ReferenceTableStrategy()])


@pytest.fixture
def resolver(catalog, offline_cascade) -> PriceResolver:
    return PriceResolver(catalog, offline_cascade)


@pytest.fixture
def cost_engine(session_factory, resolver, clock) -> CostEngine:
    return CostEngine(
        session_factory,
        resolver,
        labour_rate_flat=15.0,
        overhead_percent=10.0,
        target_margin_percent=25.0,
        clock=clock,
    )
