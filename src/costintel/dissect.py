"""Turn a free-text item description into bill-of-materials lines."""
from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterable, List, Mapping, Optional

from jsonschema import Draft7Validator
from openai import OpenAI

from .models import BOMLine
from .units import normalize_unit

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
MAX_TOKENS = 1500

SYSTEM_PROMPT = (
    "You are a cost estimator for an events, exhibition and signage contractor. "
    "Break the item description into the raw materials and services needed to "
    "produce it. Reply with JSON only, shaped as "
    '{"lines": [{"materialName": str, "quantity": number, "unit": str}]}. '
    "Use units from: sqm, kg, piece, hour, day, litre, metre, roll, set, panel."
)

BOM_LINE_SCHEMA = {
    "type": "object",
    "required": ["materialName", "quantity"],
    "properties": {
        "materialName": {"type": "string", "minLength": 1},
        "quantity": {"type": ["number", "string"]},
        "unit": {"type": ["string", "null"]},
    },
}

_LINE_VALIDATOR = Draft7Validator(BOM_LINE_SCHEMA)


def fallback_lines(description: str) -> List[BOMLine]:
    """Single-line BOM used when dissection is unavailable or yields nothing."""

    name = " ".join((description or "").split())
    if not name:
        return []
    return [BOMLine(material_name=name, quantity=1.0, unit="piece")]


def _quantity(value: Any) -> Optional[float]:
    try:
        quantity = float(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(quantity) or quantity <= 0:
        return None
    return quantity


def sanitize_bom_lines(raw: Any) -> List[BOMLine]:
    """
    Filter untrusted dissection output down to usable lines.

    Accepts either ``{"lines": [...]}`` or a bare list.  Lines without a
    material name or with a non-positive quantity are dropped; units are
    normalized.
    """

    if isinstance(raw, Mapping):
        raw = raw.get("lines")
    if not isinstance(raw, list):
        return []

    lines: List[BOMLine] = []
    for item in raw:
        if not _LINE_VALIDATOR.is_valid(item):
            LOGGER.debug("Dropping malformed BOM line: %r", item)
            continue
        name = " ".join(item["materialName"].split())
        quantity = _quantity(item["quantity"])
        if not name or quantity is None:
            LOGGER.debug("Dropping BOM line without name or positive quantity: %r", item)
            continue
        lines.append(BOMLine(material_name=name, quantity=quantity, unit=normalize_unit(item.get("unit"))))
    return lines


def coerce_bom_line(item: BOMLine | Mapping[str, Any]) -> BOMLine:
    """Validate one caller-supplied line; malformed input raises ``ValueError``."""

    if isinstance(item, BOMLine):
        name, quantity, unit = item.material_name, item.quantity, item.unit
    elif isinstance(item, Mapping):
        name = item.get("materialName", item.get("material_name"))
        quantity = item.get("quantity")
        unit = item.get("unit")
    else:
        raise ValueError(f"BOM line must be a mapping, got {type(item).__name__}")
    name = " ".join(str(name or "").split())
    if not name:
        raise ValueError("BOM line is missing a material name")
    parsed = _quantity(quantity)
    if parsed is None:
        raise ValueError(f"BOM line {name!r} needs a positive quantity, got {quantity!r}")
    return BOMLine(material_name=name, quantity=parsed, unit=normalize_unit(unit))


class OpenAIDissector:
    """Ask a chat model for the materials behind a description."""

    def __init__(self, api_key: Optional[str] = None, model: str = DEFAULT_MODEL, client: Any = None) -> None:
        self.model = model
        self._client = client
        self._api_key = api_key

    def _get_client(self):
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    def dissect(self, description: str, category: Optional[str] = None) -> List[BOMLine]:
        text = (description or "").strip()
        if not text:
            return []
        prompt = f"Item: {text}"
        if category:
            prompt += f"\nCategory: {category}"
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                max_tokens=MAX_TOKENS,
                temperature=0.2,
            )
            content = response.choices[0].message.content or ""
            lines = sanitize_bom_lines(json.loads(content))
        except Exception as exc:
            LOGGER.warning("BOM dissection failed for %r: %s", text[:60], exc)
            return fallback_lines(text)
        if not lines:
            LOGGER.info("Dissection returned no usable lines for %r; using a single line", text[:60])
            return fallback_lines(text)
        return lines


class SingleLineDissector:
    """Dissector used when no model is configured."""

    def dissect(self, description: str, category: Optional[str] = None) -> List[BOMLine]:
        return fallback_lines(description)


def coerce_bom_lines(items: Iterable[BOMLine | Mapping[str, Any]]) -> List[BOMLine]:
    return [coerce_bom_line(item) for item in items]


__all__ = [
    "BOM_LINE_SCHEMA",
    "OpenAIDissector",
    "SingleLineDissector",
    "coerce_bom_line",
    "coerce_bom_lines",
    "fallback_lines",
    "sanitize_bom_lines",
]
