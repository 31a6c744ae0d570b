from __future__ import annotations

from pathlib import Path

import pytest

from costintel.api import EstimateOptions, build_services, estimate


@pytest.fixture
def offline_env(monkeypatch) -> None:
    for key in ("SERPAPI_KEY", "BRAVE_SEARCH_API_KEY", "GOOGLE_CSE_KEY", "METALPRICES_API_KEY", "LOOKUP_CONFIG"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DISABLE_FREE_SEARCH", "1")
    monkeypatch.setenv("DISABLE_COMMODITY_FEED", "1")


def test_estimate_persists_to_database(offline_env, tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'api.db'}"

    result = estimate(
        EstimateOptions(
            title="Backdrop",
            category="events",
            bom_lines=[{"materialName": "PVC fabric 510gsm", "quantity": 12, "unit": "sqm"}],
            selling_price=50,
            database_url=url,
        )
    )

    assert result.total_cost_price == pytest.approx(40.92)
    assert result.margin == pytest.approx(18.2)

    services = build_services(env={"DATABASE_URL": url, "DISABLE_FREE_SEARCH": "1", "DISABLE_COMMODITY_FEED": "1"})
    try:
        stored = services.cost_engine.get_estimate(result.id)
        assert stored.category == "events"
        assert [line.material_name for line in stored.lines] == ["PVC fabric 510gsm"]
        assert services.catalog.find_material("pvc fabric 510gsm") is not None
    finally:
        services.close()


def test_estimate_from_description_without_ai(offline_env, tmp_path: Path) -> None:
    result = estimate(
        EstimateOptions(
            title="Stand",
            description="Plywood stand",
            database_url=f"sqlite:///{tmp_path / 'api.db'}",
        )
    )

    assert [(line.material_name, line.quantity, line.unit) for line in result.lines] == [
        ("Plywood stand", 1.0, "piece")
    ]
