"""
Canonical units of measure for catalog materials and BOM lines.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

DEFAULT_UNIT = "piece"

# Keep tuple structure to preserve order for display
UNIT_CHOICES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("sqm", ("m2", "sq m", "sq.m", "square metre", "square meter", "square metres", "square meters", "sqmt")),
    ("kg", ("kgs", "kilo", "kilos", "kilogram", "kilograms")),
    ("piece", ("pc", "pcs", "piece(s)", "pieces", "ea", "each", "no", "nos", "unit", "units", "item", "items")),
    ("hour", ("hr", "hrs", "hours", "man-hour", "man hour")),
    ("day", ("days", "man-day", "man day", "shift")),
    ("litre", ("l", "ltr", "ltrs", "liter", "liters", "litres")),
    ("metre", ("m", "mtr", "mtrs", "meter", "meters", "metres", "lm", "rm", "running metre")),
    ("roll", ("rolls", "rl")),
    ("set", ("sets", "lot", "ls", "lump sum")),
    ("panel", ("panels", "sheet", "sheets", "board", "boards")),
)

_ALIAS_MAP: Dict[str, str] = {}
for _canonical, _aliases in UNIT_CHOICES:
    _ALIAS_MAP[_canonical] = _canonical
    for _alias in _aliases:
        _ALIAS_MAP[_alias] = _canonical


def normalize_unit(value: Optional[str]) -> str:
    """
    Normalize a free-text unit into the canonical vocabulary.

    Accepts inputs such as ``"M2"``, ``"pcs"`` or ``"Square Metre"``.  Empty
    values map to ``"piece"``; unrecognised units are kept lower-cased so no
    information is lost.
    """

    if value is None:
        return DEFAULT_UNIT
    candidate = " ".join(str(value).strip().lower().split())
    if not candidate:
        return DEFAULT_UNIT
    if candidate in _ALIAS_MAP:
        return _ALIAS_MAP[candidate]
    compressed = candidate.rstrip(".").replace("per ", "")
    if compressed in _ALIAS_MAP:
        return _ALIAS_MAP[compressed]
    return candidate


def is_canonical(unit: str) -> bool:
    return unit in {name for name, _ in UNIT_CHOICES}
