"""
Persistent price catalog: materials and their append-only price observations.

Material names are matched case-insensitively.  Creation is get-or-create,
serialised per normalized name inside the process and backed by a unique
constraint across processes; a lost race re-reads the winning row.
Observations carrying a ``source_ref`` are inserted at most once.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import pandas as pd
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .db import MaterialRow, PriceObservationRow
from .models import Material, NotFoundError, PriceObservation, PriceSource, utcnow
from .units import normalize_unit

LOGGER = logging.getLogger(__name__)

DEFAULT_MANUAL_CONFIDENCE = 1.0
# Creation locks are striped by normalized name; unrelated names may share one.
LOCK_STRIPES = 64


def normalize_name(name: str) -> str:
    return " ".join(str(name or "").strip().lower().split())


def load_aliases(path: Path) -> Dict[str, str]:
    """Load an ``alias,material`` CSV into a normalized alias map."""

    if not path.exists():
        LOGGER.warning("Material alias file not found at %s", path)
        return {}
    frame = pd.read_csv(path, dtype=str).fillna("")
    columns = {c.lower().strip(): c for c in frame.columns}
    if "alias" not in columns or "material" not in columns:
        raise ValueError(f"Alias CSV {path} must have 'alias' and 'material' columns")
    aliases: Dict[str, str] = {}
    for alias, target in zip(frame[columns["alias"]], frame[columns["material"]]):
        alias_key = normalize_name(alias)
        target_key = normalize_name(target)
        if alias_key and target_key and alias_key != target_key:
            aliases[alias_key] = target_key
    LOGGER.debug("Loaded %d material aliases from %s", len(aliases), path)
    return aliases


@dataclass(frozen=True)
class MaterialSummary:
    """Catalog browsing row: a material with its most recent observations."""

    material: Material
    observation_count: int
    latest: Tuple[PriceObservation, ...] = field(default_factory=tuple)


class PriceCatalog:
    """Query primitives over the materials / price_observations tables."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Callable[[], datetime] = utcnow,
        aliases: Optional[Mapping[str, str]] = None,
        online_ttl_hours: float = 24.0,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._aliases = {normalize_name(k): normalize_name(v) for k, v in (aliases or {}).items()}
        self.online_ttl_hours = online_ttl_hours
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------ materials

    def find_material(self, name: str) -> Optional[Material]:
        """
        Find a material by name.

        Lookup order: alias list, exact normalized name, then the shortest
        catalog name containing ``name`` (ties broken alphabetically).
        """

        key = normalize_name(name)
        if not key:
            return None
        key = self._aliases.get(key, key)
        with self._session_factory() as session:
            row = session.execute(
                select(MaterialRow).where(MaterialRow.normalized_name == key)
            ).scalar_one_or_none()
            if row is None:
                row = session.execute(
                    select(MaterialRow)
                    .where(MaterialRow.normalized_name.contains(key, autoescape=True))
                    .order_by(func.length(MaterialRow.normalized_name), MaterialRow.normalized_name)
                    .limit(1)
                ).scalar_one_or_none()
            return _to_material(row) if row is not None else None

    def find_material_exact(self, name: str) -> Optional[Material]:
        key = normalize_name(name)
        if not key:
            return None
        with self._session_factory() as session:
            row = session.execute(
                select(MaterialRow).where(MaterialRow.normalized_name == key)
            ).scalar_one_or_none()
            return _to_material(row) if row is not None else None

    def get_material(self, material_id: str) -> Material:
        with self._session_factory() as session:
            row = session.get(MaterialRow, material_id)
            if row is None:
                raise NotFoundError(f"Material {material_id} not found")
            return _to_material(row)

    def create_material(self, name: str, unit: str, category: Optional[str] = None) -> Material:
        material, _ = self.get_or_create_material(name, unit, category)
        return material

    def get_or_create_material(
        self, name: str, unit: str, category: Optional[str] = None
    ) -> Tuple[Material, bool]:
        """Return ``(material, created)`` for ``name`` (case-insensitive)."""

        display = " ".join(str(name or "").split())
        key = normalize_name(display)
        if not key:
            raise ValueError("Material name must not be empty")
        with self._lock_for(key):
            existing = self.find_material_exact(display)
            if existing is not None:
                return existing, False
            try:
                with self._session_factory.begin() as session:
                    row = MaterialRow(
                        name=display,
                        normalized_name=key,
                        unit=normalize_unit(unit),
                        category=(category or None),
                        created_at=self.now(),
                    )
                    session.add(row)
                    session.flush()
                    material = _to_material(row)
            except IntegrityError:
                # Another process inserted the same normalized name first.
                LOGGER.debug("Material %r created concurrently; re-reading", display)
                existing = self.find_material_exact(display)
                if existing is None:
                    raise
                return existing, False
        LOGGER.debug("Created material %r (%s)", material.name, material.unit)
        return material, True

    # --------------------------------------------------------------- observations

    def add_observation(
        self,
        material_id: str,
        source: PriceSource | str,
        unit_price: float,
        *,
        vendor_name: Optional[str] = None,
        source_ref: Optional[str] = None,
        confidence: float = DEFAULT_MANUAL_CONFIDENCE,
        expires_at: Optional[datetime] = None,
        detail: Optional[str] = None,
    ) -> PriceObservation:
        """Append an observation; a repeated ``source_ref`` returns the existing one."""

        observation, _ = self.add_observation_checked(
            material_id,
            source,
            unit_price,
            vendor_name=vendor_name,
            source_ref=source_ref,
            confidence=confidence,
            expires_at=expires_at,
            detail=detail,
        )
        return observation

    def add_observation_checked(
        self,
        material_id: str,
        source: PriceSource | str,
        unit_price: float,
        *,
        vendor_name: Optional[str] = None,
        source_ref: Optional[str] = None,
        confidence: float = DEFAULT_MANUAL_CONFIDENCE,
        expires_at: Optional[datetime] = None,
        detail: Optional[str] = None,
    ) -> Tuple[PriceObservation, bool]:
        """Like :meth:`add_observation` but also reports whether a row was inserted."""

        price_source = PriceSource.parse(source)
        price = _validate_price(unit_price)
        score = _validate_confidence(confidence)
        ref = (source_ref or "").strip() or None

        if ref is not None:
            existing = self.find_by_source_ref(ref)
            if existing is not None:
                return existing, False

        try:
            with self._session_factory.begin() as session:
                if session.get(MaterialRow, material_id) is None:
                    raise NotFoundError(f"Material {material_id} not found")
                row = PriceObservationRow(
                    material_id=material_id,
                    source=price_source.value,
                    unit_price=price,
                    vendor_name=(vendor_name or None),
                    source_ref=ref,
                    confidence=score,
                    detail=detail,
                    recorded_at=self.now(),
                    expires_at=expires_at,
                )
                session.add(row)
                session.flush()
                observation = _to_observation(row)
        except IntegrityError:
            if ref is None:
                raise
            # Concurrent ingestion of the same source_ref; the first writer wins.
            existing = self.find_by_source_ref(ref)
            if existing is None:
                raise
            LOGGER.debug("Observation %s inserted concurrently; skipping", ref)
            return existing, False
        return observation, True

    def find_by_source_ref(self, source_ref: str) -> Optional[PriceObservation]:
        with self._session_factory() as session:
            row = session.execute(
                select(PriceObservationRow).where(PriceObservationRow.source_ref == source_ref)
            ).scalar_one_or_none()
            return _to_observation(row) if row is not None else None

    def observations_for(
        self,
        material_id: str,
        within_ttl: bool = True,
        limit: Optional[int] = None,
        source: Optional[PriceSource] = None,
    ) -> List[PriceObservation]:
        """Observations for ``material_id``, newest first, optionally from one ``source``."""

        stmt = select(PriceObservationRow).where(PriceObservationRow.material_id == material_id)
        if within_ttl:
            stmt = stmt.where(self._unexpired())
        if source is not None:
            stmt = stmt.where(PriceObservationRow.source == PriceSource(source).value)
        stmt = stmt.order_by(PriceObservationRow.recorded_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [_to_observation(row) for row in session.execute(stmt).scalars()]

    def valid_sources(self, material_id: str) -> List[PriceSource]:
        """Distinct sources with at least one unexpired observation, highest priority first."""

        stmt = (
            select(PriceObservationRow.source)
            .where(PriceObservationRow.material_id == material_id, self._unexpired())
            .distinct()
        )
        with self._session_factory() as session:
            sources = [PriceSource(value) for value in session.execute(stmt).scalars()]
        return sorted(sources, key=lambda source: source.priority, reverse=True)

    def _unexpired(self):
        return or_(
            PriceObservationRow.expires_at.is_(None),
            PriceObservationRow.expires_at > self.now(),
        )

    def latest_online(self, material_name: str) -> Optional[PriceObservation]:
        """Newest unexpired ONLINE observation for an exact material name."""

        material = self.find_material_exact(material_name)
        if material is None:
            return None
        with self._session_factory() as session:
            row = session.execute(
                select(PriceObservationRow)
                .where(
                    PriceObservationRow.material_id == material.id,
                    PriceObservationRow.source == PriceSource.ONLINE.value,
                    PriceObservationRow.expires_at > self.now(),
                )
                .order_by(PriceObservationRow.recorded_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_observation(row) if row is not None else None

    def record_price(
        self,
        material_name: str,
        unit: str,
        unit_price: float,
        source: PriceSource | str = PriceSource.MANUAL,
        *,
        vendor_name: Optional[str] = None,
        source_ref: Optional[str] = None,
        category: Optional[str] = None,
        confidence: Optional[float] = None,
        ttl_hours: Optional[float] = None,
        detail: Optional[str] = None,
    ) -> PriceObservation:
        """
        Get-or-create ``material_name`` and append a price for it.

        ``ONLINE`` prices expire after the catalog TTL unless ``ttl_hours`` is
        given; other sources never expire unless ``ttl_hours`` is given.
        """

        price_source = PriceSource.parse(source)
        material, _ = self.get_or_create_material(material_name, unit, category)
        if ttl_hours is not None:
            if ttl_hours <= 0:
                raise ValueError(f"ttl_hours must be positive, got {ttl_hours}")
            expires_at: Optional[datetime] = self.now() + timedelta(hours=float(ttl_hours))
        elif price_source is PriceSource.ONLINE:
            expires_at = self.now() + timedelta(hours=self.online_ttl_hours)
        else:
            expires_at = None
        return self.add_observation(
            material.id,
            price_source,
            unit_price,
            vendor_name=vendor_name,
            source_ref=source_ref,
            confidence=DEFAULT_MANUAL_CONFIDENCE if confidence is None else confidence,
            expires_at=expires_at,
            detail=detail,
        )

    # -------------------------------------------------------------------- browse

    def list_materials(self, search: Optional[str] = None, latest: int = 3) -> List[MaterialSummary]:
        stmt = select(MaterialRow)
        key = normalize_name(search or "")
        if key:
            stmt = stmt.where(MaterialRow.normalized_name.contains(key, autoescape=True))
        stmt = stmt.order_by(MaterialRow.name)
        with self._session_factory() as session:
            materials = [_to_material(row) for row in session.execute(stmt).scalars()]
            counts = dict(
                session.execute(
                    select(PriceObservationRow.material_id, func.count(PriceObservationRow.id))
                    .group_by(PriceObservationRow.material_id)
                ).all()
            )
        summaries: List[MaterialSummary] = []
        for material in materials:
            recent = self.observations_for(material.id, within_ttl=False, limit=latest)
            summaries.append(
                MaterialSummary(
                    material=material,
                    observation_count=int(counts.get(material.id, 0)),
                    latest=tuple(recent),
                )
            )
        return summaries

    def materials_frame(self, search: Optional[str] = None) -> pd.DataFrame:
        """Flatten :meth:`list_materials` into one row per material."""

        rows = []
        for summary in self.list_materials(search):
            newest = summary.latest[0] if summary.latest else None
            rows.append(
                {
                    "MATERIAL": summary.material.name,
                    "UNIT": summary.material.unit,
                    "CATEGORY": summary.material.category or "",
                    "OBSERVATIONS": summary.observation_count,
                    "LATEST_PRICE": newest.unit_price if newest else float("nan"),
                    "LATEST_SOURCE": newest.source.value if newest else "",
                    "LATEST_RECORDED_AT": newest.recorded_at if newest else pd.NaT,
                }
            )
        columns = ["MATERIAL", "UNIT", "CATEGORY", "OBSERVATIONS", "LATEST_PRICE", "LATEST_SOURCE", "LATEST_RECORDED_AT"]
        return pd.DataFrame(rows, columns=columns)

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % LOCK_STRIPES]


def _validate_price(value: float) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Unit price must be numeric, got {value!r}") from None
    if not math.isfinite(price) or price < 0:
        raise ValueError(f"Unit price must be a non-negative number, got {value!r}")
    return price


def _validate_confidence(value: float) -> float:
    score = float(value)
    if not 0.0 <= score <= 1.0:
        raise ValueError(f"Confidence must be within [0, 1], got {value!r}")
    return score


def _to_material(row: MaterialRow) -> Material:
    return Material(
        id=row.id,
        name=row.name,
        unit=row.unit,
        category=row.category,
        created_at=row.created_at,
    )


def _to_observation(row: PriceObservationRow) -> PriceObservation:
    return PriceObservation(
        id=row.id,
        material_id=row.material_id,
        source=PriceSource(row.source),
        unit_price=float(row.unit_price),
        confidence=float(row.confidence),
        recorded_at=row.recorded_at,
        vendor_name=row.vendor_name,
        source_ref=row.source_ref,
        expires_at=row.expires_at,
        detail=row.detail,
    )


__all__ = ["MaterialSummary", "PriceCatalog", "load_aliases", "normalize_name"]
