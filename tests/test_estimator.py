from __future__ import annotations

from types import SimpleNamespace

import pytest

from costintel.catalog import PriceCatalog
from costintel.db import create_db_engine, make_session_factory
from costintel.estimator import CostEngine
from costintel.lookup import CatalogCacheStrategy, OnlineLookupCascade
from costintel.models import BOMLine, NotFoundError, PriceSource, ResolvedPrice
from costintel.price_logic import PriceResolver


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'estimates.db'}")
    yield make_session_factory(engine)
    engine.dispose()


def test_pvc_estimate_costs(cost_engine: CostEngine) -> None:
    estimate = cost_engine.create_estimate(
        "Exhibition backdrop",
        bom_lines=[{"materialName": "PVC fabric 510gsm", "quantity": 12, "unit": "sqm"}],
    )

    assert estimate.material_cost == pytest.approx(22.20)
    assert estimate.labour_cost == pytest.approx(15.0)
    assert estimate.overhead_cost == pytest.approx(3.72)
    assert estimate.total_cost_price == pytest.approx(40.92)
    assert estimate.confidence_score == 75
    assert estimate.margin is None

    line = estimate.lines[0]
    assert line.unit_price == pytest.approx(1.85)
    assert line.line_total == pytest.approx(22.2)
    assert line.source == "ONLINE"
    assert line.detail == "reference:PVC fabric"


def test_unpriceable_line_is_kept_at_zero(cost_engine: CostEngine) -> None:
    estimate = cost_engine.create_estimate(
        "Prototype panel",
        bom_lines=[
            BOMLine("Unobtainium sheet", 3, "panel"),
            BOMLine("PVC fabric 510gsm", 2, "sqm"),
        ],
    )

    missing = estimate.lines[0]
    assert (missing.unit_price, missing.source, missing.confidence) == (0.0, "none", 0.0)
    assert missing.line_total == 0.0
    assert estimate.material_cost == pytest.approx(3.7)
    # mean(0, 0.75) -> 37.5 rounds half up
    assert estimate.confidence_score == 38


def test_no_lines_gives_zero_confidence(cost_engine: CostEngine) -> None:
    estimate = cost_engine.create_estimate("Labour only", bom_lines=[])

    assert estimate.lines == ()
    assert estimate.material_cost == 0.0
    assert estimate.total_cost_price == pytest.approx(16.5)
    assert estimate.confidence_score == 0


def test_margin_and_selling_price_update(session_factory, resolver, catalog, clock) -> None:
    catalog.record_price("Stand build package", "set", 350.0)
    engine = CostEngine(session_factory, resolver, labour_rate_flat=0, overhead_percent=0, clock=clock)

    estimate = engine.create_estimate(
        "Booth",
        bom_lines=[BOMLine("Stand build package", 1, "set")],
        selling_price=500,
    )
    assert estimate.total_cost_price == pytest.approx(350.0)
    assert estimate.margin == pytest.approx(30.0)

    clock.advance(1)
    updated = engine.update_selling_price(estimate.id, 400)
    reread = engine.get_estimate(estimate.id)

    assert reread.margin == pytest.approx(12.5)
    assert reread.selling_price == pytest.approx(400.0)
    assert updated.margin == reread.margin
    for field in ("material_cost", "labour_cost", "overhead_cost", "total_cost_price", "confidence_score"):
        assert getattr(reread, field) == getattr(estimate, field)
    assert reread.updated_at > estimate.updated_at
    assert reread.lines == estimate.lines


def test_missing_estimate_raises_not_found(cost_engine: CostEngine) -> None:
    with pytest.raises(NotFoundError):
        cost_engine.get_estimate("does-not-exist")
    with pytest.raises(NotFoundError):
        cost_engine.update_selling_price("does-not-exist", 100)


@pytest.mark.parametrize("bad", [0, -5, "abc"])
def test_invalid_selling_price_rejected(cost_engine: CostEngine, bad) -> None:
    estimate = cost_engine.create_estimate("Sign", bom_lines=[])
    with pytest.raises(ValueError):
        cost_engine.update_selling_price(estimate.id, bad)


def test_malformed_lines_and_title_rejected(cost_engine: CostEngine) -> None:
    with pytest.raises(ValueError):
        cost_engine.create_estimate("  ", bom_lines=[])
    with pytest.raises(ValueError):
        cost_engine.create_estimate("Sign", bom_lines=[{"materialName": "Vinyl", "quantity": 0}])
    with pytest.raises(ValueError):
        cost_engine.create_estimate("Sign", bom_lines=[{"quantity": 2}])


class CountingResolver:
    def __init__(self, prices, failing=()):
        self.prices = prices
        self.failing = set(failing)
        self.calls = []

    def resolve_price(self, name, unit=None):
        self.calls.append(name)
        if name in self.failing:
            raise RuntimeError("catalog unavailable")
        return ResolvedPrice(self.prices.get(name, 0.0), "MANUAL", 1.0)


def test_duplicate_lines_resolved_once(session_factory, clock) -> None:
    resolver = CountingResolver({"Vinyl": 2.0})
    engine = CostEngine(session_factory, resolver, clock=clock)

    estimate = engine.create_estimate(
        "Wrap",
        bom_lines=[BOMLine("Vinyl", 3, "sqm"), BOMLine("vinyl", 2, "sqm")],
    )

    assert resolver.calls == ["Vinyl"]
    assert [line.line_total for line in estimate.lines] == [6.0, 4.0]


def test_parallel_resolution_keeps_line_order(file_session_factory, clock) -> None:
    prices = {f"Item {i}": float(i) for i in range(1, 7)}
    engine = CostEngine(file_session_factory, CountingResolver(prices), workers=4, clock=clock)
    assert engine.workers == 4

    estimate = engine.create_estimate("Kit", bom_lines=[BOMLine(name, 1, "piece") for name in prices])

    assert [line.unit_price for line in estimate.lines] == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]
    assert estimate.material_cost == pytest.approx(21.0)


def test_one_failing_line_does_not_abort(session_factory, clock) -> None:
    resolver = CountingResolver({"Good": 5.0}, failing={"Bad"})
    engine = CostEngine(session_factory, resolver, clock=clock)

    estimate = engine.create_estimate("Mixed", bom_lines=[BOMLine("Good", 1), BOMLine("Bad", 1)])

    assert [line.source for line in estimate.lines] == ["MANUAL", "none"]
    assert estimate.confidence_score == 50


def test_dissector_used_once_when_lines_absent(session_factory, clock) -> None:
    calls = []

    class Dissector:
        def dissect(self, description, category=None):
            calls.append((description, category))
            return [BOMLine("Vinyl", 4, "sqm")]

    engine = CostEngine(session_factory, CountingResolver({"Vinyl": 2.5}), dissector=Dissector(), clock=clock)
    estimate = engine.create_estimate("Shop sign", description="Vinyl shop sign 2x2m", category="signage")

    assert calls == [("Vinyl shop sign 2x2m", "signage")]
    assert estimate.material_cost == pytest.approx(10.0)
    assert estimate.category == "signage"


def test_default_dissector_makes_single_line(session_factory, clock) -> None:
    engine = CostEngine(session_factory, CountingResolver({}), clock=clock)

    estimate = engine.create_estimate("Roll-up banner")

    assert [(line.material_name, line.quantity, line.unit) for line in estimate.lines] == [("Roll-up banner", 1.0, "piece")]


def test_list_estimates_newest_first(cost_engine: CostEngine, clock) -> None:
    first = cost_engine.create_estimate("First", category="events", bom_lines=[])
    clock.advance(1)
    second = cost_engine.create_estimate("Second", category="signage", bom_lines=[])

    assert [e.id for e in cost_engine.list_estimates()] == [second.id, first.id]
    assert [e.id for e in cost_engine.list_estimates(category="events")] == [first.id]
    assert [e.id for e in cost_engine.list_estimates(category="SIGN")] == [second.id]


def test_to_dict_serialises_lines(cost_engine: CostEngine) -> None:
    estimate = cost_engine.create_estimate("Backdrop", bom_lines=[BOMLine("PVC fabric 510gsm", 1, "sqm")])
    data = estimate.to_dict()

    assert data["lines"][0]["material_name"] == "PVC fabric 510gsm"
    assert isinstance(data["created_at"], str)
    assert SimpleNamespace(**data).title == "Backdrop"


def test_in_memory_database_resolves_serially(session_factory, resolver, clock) -> None:
    engine = CostEngine(session_factory, resolver, workers=8, clock=clock)

    assert engine.workers == 1


@pytest.mark.parametrize("database", ["memory", "file"])
def test_parallel_estimate_persists_every_write_back(database, session_factory, file_session_factory, stub_tier, clock) -> None:
    factory = session_factory if database == "memory" else file_session_factory
    catalog = PriceCatalog(factory, clock=clock)
    cascade = OnlineLookupCascade(catalog, [CatalogCacheStrategy(catalog), stub_tier(price=2.5)])
    engine = CostEngine(factory, PriceResolver(catalog, cascade), workers=8, clock=clock)
    names = [f"Panel {i:02d} vinyl" for i in range(40)]

    estimate = engine.create_estimate("Bulk order", bom_lines=[BOMLine(name, 1, "sqm") for name in names])

    assert [line.source for line in estimate.lines] == ["ONLINE"] * len(names)
    assert len(catalog.list_materials()) == len(names)
    for name in names:
        material = catalog.find_material_exact(name)
        observations = catalog.observations_for(material.id)
        assert [obs.source for obs in observations] == [PriceSource.ONLINE]
