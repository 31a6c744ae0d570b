from __future__ import annotations

import pytest

from costintel.estimator import CostEngine
from costintel.margin import compute_margin, is_at_risk, margin_dashboard
from costintel.models import BOMLine, CostEstimate
from costintel.reporting import make_dashboard_text


def _estimate(ident: str, margin, category=None, selling=None) -> CostEstimate:
    return CostEstimate(
        id=ident,
        title=f"Estimate {ident}",
        material_cost=300.0,
        labour_cost=15.0,
        overhead_cost=35.0,
        total_cost_price=350.0,
        confidence_score=80,
        category=category,
        selling_price=selling,
        margin=margin,
    )


def test_compute_margin_examples() -> None:
    assert compute_margin(500, 350) == pytest.approx(30.0)
    assert compute_margin(400, 350) == pytest.approx(12.5)
    assert compute_margin(300, 350) == pytest.approx(-16.7)
    assert compute_margin(None, 350) is None
    assert compute_margin(500, 0) is None


def test_at_risk_threshold() -> None:
    assert is_at_risk(30.0, 25) is False
    assert is_at_risk(12.5, 25) is True
    assert is_at_risk(25.0, 25) is False
    assert is_at_risk(None, 25) is False


def test_dashboard_summary_and_ordering() -> None:
    estimates = [
        _estimate("a", 30.0, "events", 500),
        _estimate("b", None, "events"),
        _estimate("c", 12.5, "signage", 400),
        _estimate("d", -5.0, "signage", 333),
    ]

    dashboard = margin_dashboard(estimates, 25.0)

    assert [entry.estimate.id for entry in dashboard.estimates] == ["d", "c", "a", "b"]
    assert [entry.at_risk for entry in dashboard.estimates] == [True, True, False, False]
    summary = dashboard.summary
    assert summary.total == 4
    assert summary.at_risk == 2
    assert summary.avg_margin == pytest.approx(12.5)
    assert summary.target_margin == 25.0
    assert summary.to_dict()["atRisk"] == 2


def test_dashboard_filters() -> None:
    estimates = [
        _estimate("a", 30.0, "Events", 500),
        _estimate("b", None, "events"),
        _estimate("c", 12.5, "signage", 400),
        _estimate("d", 40.0, "Corporate Events", 900),
    ]

    by_category = margin_dashboard(estimates, 25.0, category="events")
    assert [e.estimate.id for e in by_category.estimates] == ["a", "d", "b"]

    partial = margin_dashboard(estimates, 25.0, category="SIGN")
    assert [e.estimate.id for e in partial.estimates] == ["c"]

    ranged = margin_dashboard(estimates, 25.0, min_margin=10, max_margin=20)
    assert [e.estimate.id for e in ranged.estimates] == ["c"]
    assert ranged.summary.avg_margin == pytest.approx(12.5)


def test_empty_dashboard() -> None:
    dashboard = margin_dashboard([], 25.0)

    assert dashboard.estimates == []
    assert dashboard.summary.total == 0
    assert dashboard.summary.avg_margin == 0.0
    assert "0 estimate(s)" in make_dashboard_text(dashboard)


def test_engine_dashboard_flags_low_margin(session_factory, resolver, catalog, clock) -> None:
    catalog.record_price("Stand build package", "set", 350.0)
    engine = CostEngine(session_factory, resolver, labour_rate_flat=0, overhead_percent=0, clock=clock)
    healthy = engine.create_estimate("Healthy", bom_lines=[BOMLine("Stand build package", 1, "set")], selling_price=500)
    thin = engine.create_estimate("Thin", bom_lines=[BOMLine("Stand build package", 1, "set")], selling_price=400)

    dashboard = engine.margin_dashboard()

    flags = {entry.estimate.id: entry.at_risk for entry in dashboard.estimates}
    assert flags == {healthy.id: False, thin.id: True}
    assert dashboard.summary.avg_margin == pytest.approx(21.3)
    assert "Thin" in make_dashboard_text(dashboard)
