from __future__ import annotations

import threading
from pathlib import Path

import pytest

from costintel.catalog import LOCK_STRIPES, PriceCatalog, load_aliases, normalize_name
from costintel.db import create_db_engine, make_session_factory
from costintel.models import NotFoundError, PriceSource


def test_get_or_create_is_case_insensitive(catalog: PriceCatalog) -> None:
    first, created = catalog.get_or_create_material("PVC Fabric  510gsm", "m2")
    second, created_again = catalog.get_or_create_material("pvc fabric 510GSM", "sqm")

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert first.name == "PVC Fabric 510gsm"
    assert first.unit == "sqm"


def test_empty_material_name_rejected(catalog: PriceCatalog) -> None:
    with pytest.raises(ValueError):
        catalog.get_or_create_material("   ", "piece")


def test_find_material_prefers_exact_then_shortest_substring(catalog: PriceCatalog) -> None:
    catalog.create_material("Duct tape", "roll")
    catalog.create_material("Double-sided tape 25mm", "roll")
    catalog.create_material("Tape", "roll")

    assert catalog.find_material("TAPE").name == "Tape"
    assert catalog.find_material("sided tape").name == "Double-sided tape 25mm"
    assert catalog.find_material("glue") is None


def test_find_material_uses_aliases(session_factory, clock) -> None:
    catalog = PriceCatalog(session_factory, clock=clock, aliases={"Frontlit": "Flex banner 440gsm"})
    catalog.create_material("Flex banner 440gsm", "sqm")

    assert catalog.find_material("frontlit").name == "Flex banner 440gsm"


def test_load_aliases_reads_csv(tmp_path: Path) -> None:
    path = tmp_path / "aliases.csv"
    path.write_text("alias,material\nFrontlit, Flex Banner 440gsm\n,ignored\n", encoding="utf-8")

    assert load_aliases(path) == {"frontlit": "flex banner 440gsm"}


def test_repeated_source_ref_is_not_duplicated(catalog: PriceCatalog) -> None:
    material = catalog.create_material("Plywood 18mm", "panel")
    first, inserted = catalog.add_observation_checked(
        material.id, PriceSource.VENDOR_PO, 12.5, source_ref="PO:PO-001:item:1", confidence=0.9
    )
    second, inserted_again = catalog.add_observation_checked(
        material.id, PriceSource.VENDOR_PO, 99.0, source_ref="PO:PO-001:item:1", confidence=0.9
    )

    assert inserted is True
    assert inserted_again is False
    assert second.id == first.id
    assert second.unit_price == 12.5
    assert len(catalog.observations_for(material.id)) == 1


def test_add_observation_validates_input(catalog: PriceCatalog) -> None:
    material = catalog.create_material("Paint", "litre")

    with pytest.raises(ValueError):
        catalog.add_observation(material.id, PriceSource.MANUAL, -1.0)
    with pytest.raises(ValueError):
        catalog.add_observation(material.id, PriceSource.MANUAL, 2.0, confidence=1.5)
    with pytest.raises(ValueError):
        catalog.add_observation(material.id, "GUESS", 2.0)
    with pytest.raises(NotFoundError):
        catalog.add_observation("missing-id", PriceSource.MANUAL, 2.0)


def test_observations_newest_first_and_expiry_filter(catalog: PriceCatalog, clock) -> None:
    catalog.record_price("Copper wire", "kg", 3.5, PriceSource.ONLINE, confidence=0.55, ttl_hours=1)
    clock.advance(0.5)
    catalog.record_price("Copper wire", "kg", 3.9, PriceSource.COST_SHEET, confidence=0.8)
    material = catalog.find_material("copper wire")

    fresh = catalog.observations_for(material.id)
    assert [obs.unit_price for obs in fresh] == [3.9, 3.5]

    clock.advance(1)
    assert [obs.unit_price for obs in catalog.observations_for(material.id)] == [3.9]
    assert len(catalog.observations_for(material.id, within_ttl=False)) == 2


def test_record_price_sets_online_expiry(catalog: PriceCatalog, clock) -> None:
    online = catalog.record_price("LED strip", "metre", 1.4, PriceSource.ONLINE, confidence=0.5)
    manual = catalog.record_price("LED strip", "metre", 1.6)

    assert online.recorded_at == clock()
    assert (online.expires_at - online.recorded_at).total_seconds() == 24 * 3600
    assert manual.expires_at is None
    assert manual.confidence == 1.0
    assert catalog.latest_online("led strip").unit_price == 1.4


def test_get_material_not_found(catalog: PriceCatalog) -> None:
    with pytest.raises(NotFoundError):
        catalog.get_material("nope")


def test_concurrent_get_or_create_yields_one_material(tmp_path: Path, clock) -> None:
    engine = create_db_engine(f"sqlite:///{tmp_path / 'catalog.db'}")
    catalog = PriceCatalog(make_session_factory(engine), clock=clock)
    results = []

    def worker() -> None:
        results.append(catalog.get_or_create_material("Aluminium truss 30cm", "metre")[0].id)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert len(catalog.list_materials()) == 1
    engine.dispose()


def test_creation_locks_are_striped(catalog: PriceCatalog) -> None:
    for i in range(LOCK_STRIPES * 3):
        catalog.get_or_create_material(f"Banner stand {i}", "piece")

    assert len(catalog._locks) == LOCK_STRIPES
    assert catalog._lock_for("banner stand 7") is catalog._lock_for("banner stand 7")


def test_lost_creation_race_rereads_winner(catalog: PriceCatalog, monkeypatch) -> None:
    winner = catalog.create_material("Gypsum board", "panel")
    real_find = catalog.find_material_exact
    calls = {"n": 0}

    def stale_find(name):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(name)

    monkeypatch.setattr(catalog, "find_material_exact", stale_find)
    material, created = catalog.get_or_create_material("GYPSUM BOARD", "panel")

    assert created is False
    assert material.id == winner.id


def test_lost_source_ref_race_returns_existing(catalog: PriceCatalog, monkeypatch) -> None:
    material = catalog.create_material("Carpet", "sqm")
    first = catalog.add_observation(material.id, PriceSource.COST_SHEET, 2.1, source_ref="COSTSHEET:7")
    real_find = catalog.find_by_source_ref
    calls = {"n": 0}

    def stale_find(ref):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(ref)

    monkeypatch.setattr(catalog, "find_by_source_ref", stale_find)
    observation, inserted = catalog.add_observation_checked(
        material.id, PriceSource.COST_SHEET, 2.1, source_ref="COSTSHEET:7"
    )

    assert inserted is False
    assert observation.id == first.id


def test_list_materials_and_frame(catalog: PriceCatalog, clock) -> None:
    catalog.record_price("MDF board", "sqm", 6.0)
    clock.advance(1)
    catalog.record_price("MDF board", "sqm", 6.4, PriceSource.VENDOR_PO, vendor_name="Muscat Timber")
    catalog.create_material("Foam board", "sqm")

    summaries = catalog.list_materials("board")
    assert [s.material.name for s in summaries] == ["Foam board", "MDF board"]
    assert summaries[1].observation_count == 2

    df = catalog.materials_frame()
    mdf = df.loc[df["MATERIAL"] == "MDF board"].iloc[0]
    assert mdf["OBSERVATIONS"] == 2
    assert mdf["LATEST_SOURCE"] == "VENDOR_PO"


def test_normalize_name() -> None:
    assert normalize_name("  Flex   BANNER ") == "flex banner"
