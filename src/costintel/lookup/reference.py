"""
Static reference price table.

Entries are matched by keyword against the material name; the longest
matching keyword wins and the first entry wins a tie.  Prices are in the
reporting currency.  A YAML or JSON file can extend or replace the
built-in table.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import yaml

from ..models import LookupTier, PriceTag
from ..units import normalize_unit
from .base import LookupStrategy, TierQuote
from .config import ReferenceTableConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferencePrice:
    label: str
    keywords: Tuple[str, ...]
    unit_price: float
    unit: str
    confidence: float


DEFAULT_REFERENCE_PRICES: Tuple[ReferencePrice, ...] = (
    # Fabrics and print media
    ReferencePrice("PVC fabric", ("pvc fabric", "pvc banner", "tarpaulin"), 1.85, "sqm", 0.75),
    ReferencePrice("Flex banner", ("flex banner", "flex"), 1.2, "sqm", 0.65),
    ReferencePrice("Self-adhesive vinyl", ("vinyl sticker", "self adhesive vinyl", "vinyl"), 2.4, "sqm", 0.65),
    ReferencePrice("Mesh banner", ("mesh banner", "mesh"), 1.6, "sqm", 0.6),
    ReferencePrice("Canvas", ("canvas",), 3.1, "sqm", 0.6),
    ReferencePrice("Backlit film", ("backlit film", "backlit"), 4.5, "sqm", 0.6),
    ReferencePrice("Carpet", ("exhibition carpet", "carpet"), 2.2, "sqm", 0.6),
    # Boards and sheets
    ReferencePrice("MDF board", ("mdf",), 6.5, "sqm", 0.65),
    ReferencePrice("Plywood", ("plywood", "ply board"), 8.0, "sqm", 0.65),
    ReferencePrice("Foam board", ("foam board", "forex", "foamex"), 4.2, "sqm", 0.65),
    ReferencePrice("Acrylic sheet", ("acrylic sheet", "acrylic", "perspex", "plexiglass"), 14.0, "sqm", 0.6),
    ReferencePrice("Aluminium composite panel", ("aluminium composite", "acp"), 9.5, "sqm", 0.6),
    ReferencePrice("Gypsum board", ("gypsum board", "gypsum"), 2.8, "sqm", 0.6),
    # Lighting and electrical
    ReferencePrice("LED strip", ("led strip",), 1.5, "metre", 0.6),
    ReferencePrice("LED spotlight", ("spotlight", "spot light"), 7.5, "piece", 0.6),
    ReferencePrice("LED flood light", ("flood light", "floodlight"), 12.0, "piece", 0.6),
    ReferencePrice("Electrical cable", ("electrical cable", "cable"), 0.45, "metre", 0.55),
    # Structure
    ReferencePrice("Aluminium truss", ("truss",), 18.0, "metre", 0.6),
    ReferencePrice("Scaffolding", ("scaffolding", "scaffold"), 3.5, "day", 0.55),
    # Finishes
    ReferencePrice("Emulsion paint", ("emulsion paint", "paint"), 2.6, "litre", 0.6),
    ReferencePrice("Wallpaper", ("wallpaper",), 3.0, "sqm", 0.55),
    # Labour
    ReferencePrice("Skilled labour", ("skilled labour", "technician", "carpenter", "electrician"), 3.5, "hour", 0.6),
    ReferencePrice("General labour", ("labour", "labor", "helper"), 2.0, "hour", 0.6),
    ReferencePrice("Labour day rate", ("labour day", "man day"), 18.0, "day", 0.6),
    # Base metals, per kg
    ReferencePrice("Aluminium", ("aluminium", "aluminum"), 0.99, "kg", 0.5),
    ReferencePrice("Copper", ("copper",), 3.68, "kg", 0.5),
    ReferencePrice("Steel", ("steel", "iron"), 0.29, "kg", 0.5),
    ReferencePrice("Zinc", ("zinc",), 1.14, "kg", 0.5),
    ReferencePrice("Nickel", ("nickel",), 5.62, "kg", 0.5),
    ReferencePrice("Lead", ("lead",), 0.74, "kg", 0.5),
    ReferencePrice("Tin", ("tin",), 12.3, "kg", 0.5),
)


def _keyword_pattern(keyword: str) -> re.Pattern:
    parts = [re.escape(part) for part in keyword.lower().split()]
    return re.compile(r"\b" + r"\s+".join(parts) + r"\b")


def best_match(material_name: str, table: Sequence[ReferencePrice]) -> Optional[Tuple[ReferencePrice, str]]:
    """Return the entry with the longest keyword found in ``material_name``."""

    lowered = material_name.lower()
    best: Optional[Tuple[ReferencePrice, str]] = None
    for entry in table:
        for keyword in entry.keywords:
            if best is not None and len(keyword) <= len(best[1]):
                continue
            if _keyword_pattern(keyword).search(lowered):
                best = (entry, keyword)
    return best


def _entry_from_dict(raw: dict) -> ReferencePrice:
    keywords = raw.get("keywords") or [raw["label"]]
    if isinstance(keywords, str):
        keywords = [keywords]
    price = float(raw["unit_price"])
    if price <= 0:
        raise ValueError(f"Reference price for {raw['label']!r} must be positive")
    return ReferencePrice(
        label=str(raw["label"]),
        keywords=tuple(str(k).lower() for k in keywords),
        unit_price=price,
        unit=normalize_unit(raw.get("unit")),
        confidence=float(raw.get("confidence", 0.6)),
    )


def load_reference_table(path: Path) -> List[ReferencePrice]:
    with path.open("r", encoding="utf-8") as f:
        if path.suffix.lower() in {".yaml", ".yml"}:
            raw = yaml.safe_load(f) or []
        else:
            raw = json.load(f)
    if isinstance(raw, dict):
        raw = raw.get("prices") or []
    entries = [_entry_from_dict(item) for item in raw]
    LOGGER.info("Loaded %d reference prices from %s", len(entries), path)
    return entries


def build_reference_table(config: ReferenceTableConfig) -> List[ReferencePrice]:
    custom: List[ReferencePrice] = []
    if config.path is not None:
        custom = load_reference_table(config.path)
    if config.replace_defaults:
        return custom
    # Custom entries go first so they win keyword ties.
    return custom + list(DEFAULT_REFERENCE_PRICES)


class ReferenceTableStrategy(LookupStrategy):
    tier = LookupTier.REFERENCE
    name = "reference-table"

    def __init__(self, table: Iterable[ReferencePrice] = DEFAULT_REFERENCE_PRICES, enabled: bool = True) -> None:
        self.table = list(table)
        self.enabled = enabled

    @classmethod
    def from_config(cls, config: ReferenceTableConfig) -> "ReferenceTableStrategy":
        return cls(build_reference_table(config), enabled=config.enabled)

    def is_available(self) -> bool:
        return self.enabled and bool(self.table)

    def lookup(self, material_name: str, unit: str) -> Optional[TierQuote]:
        match = best_match(material_name, self.table)
        if match is None:
            return None
        entry, keyword = match
        LOGGER.debug("Reference match for %r: %s (keyword %r)", material_name, entry.label, keyword)
        return TierQuote(
            unit_price=entry.unit_price,
            confidence=entry.confidence,
            tag=PriceTag(self.tier, entry.label),
            raw=f"{entry.label} per {entry.unit}",
        )


__all__ = [
    "DEFAULT_REFERENCE_PRICES",
    "ReferencePrice",
    "ReferenceTableStrategy",
    "best_match",
    "build_reference_table",
    "load_reference_table",
]
