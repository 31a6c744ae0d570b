"""
Bulk price extraction from purchase orders and historical cost sheets.

Each input row carries a stable reference (``PO:<order>:item:<id>`` or
``COSTSHEET:<id>``) stored as the observation ``source_ref``, so running an
extraction twice over the same rows leaves the catalog unchanged.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from .catalog import PriceCatalog, normalize_name
from .models import Material, PriceSource
from .units import normalize_unit

LOGGER = logging.getLogger(__name__)

PO_CONFIDENCE = 0.9
COST_SHEET_CONFIDENCE = 0.8
# Purchase orders in any other status are ignored.
ELIGIBLE_PO_STATUSES = {"APPROVED", "IN_PROGRESS", "COMPLETED"}

Rows = Union[pd.DataFrame, Iterable[Mapping[str, Any]]]


@dataclass
class ExtractionResult:
    lines_processed: int = 0
    materials_created: int = 0
    prices_inserted: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "linesProcessed": self.lines_processed,
            "materialsCreated": self.materials_created,
            "pricesInserted": self.prices_inserted,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


def po_source_ref(order_number: Any, item_id: Any) -> str:
    return f"PO:{order_number}:item:{item_id}"


def cost_sheet_source_ref(item_id: Any) -> str:
    return f"COSTSHEET:{item_id}"


def _column_key(name: str) -> str:
    text = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", str(name).strip())
    return re.sub(r"[\s\-]+", "_", text).upper()


def _frame(rows: Rows) -> pd.DataFrame:
    df = rows.copy() if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows))
    df.columns = [_column_key(c) for c in df.columns]
    return df


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    return " ".join(str(value).split())


def _price(value: Any) -> Optional[float]:
    price = pd.to_numeric(pd.Series([value]), errors="coerce").iloc[0]
    if pd.isna(price) or price <= 0:
        return None
    return float(price)


def read_rows(path: Path) -> pd.DataFrame:
    """Load extraction rows from CSV or Excel."""

    if path.suffix.lower() in {".xlsx", ".xlsm"}:
        return pd.read_excel(path, engine="openpyxl")
    return pd.read_csv(path)


class _BatchWriter:
    """Inserts one batch of observations with a batch-scoped material cache."""

    def __init__(self, catalog: PriceCatalog, source: PriceSource, confidence: float) -> None:
        self.catalog = catalog
        self.source = source
        self.confidence = confidence
        self.result = ExtractionResult()
        self._materials: Dict[str, Material] = {}

    def material(self, name: str, unit: str) -> Material:
        key = normalize_name(name)
        material = self._materials.get(key)
        if material is None:
            material, created = self.catalog.get_or_create_material(name, unit)
            if created:
                self.result.materials_created += 1
            self._materials[key] = material
        return material

    def add(self, description: str, unit_price: Optional[float], source_ref: str, unit: str, vendor: str) -> None:
        self.result.lines_processed += 1
        if not description or unit_price is None:
            self.result.skipped += 1
            return
        if self.catalog.find_by_source_ref(source_ref) is not None:
            self.result.skipped += 1
            return
        try:
            material = self.material(description, unit)
            _, inserted = self.catalog.add_observation_checked(
                material.id,
                self.source,
                unit_price,
                vendor_name=vendor or None,
                source_ref=source_ref,
                confidence=self.confidence,
            )
        except Exception as exc:
            self.result.errors.append(f"{description}: {exc}")
            LOGGER.error("Failed to extract price for %r (%s): %s", description, source_ref, exc)
            return
        if inserted:
            self.result.prices_inserted += 1
        else:
            self.result.skipped += 1


def extract_from_purchase_orders(catalog: PriceCatalog, rows: Rows) -> ExtractionResult:
    """
    Record ``VENDOR_PO`` prices from purchase-order line items.

    Expected columns: ``ORDER_NUMBER``, ``ITEM_ID``, ``DESCRIPTION``,
    ``UNIT_PRICE`` and optionally ``VENDOR_NAME``, ``UNIT``, ``STATUS``.
    When a status column is present only approved/in-progress/completed
    orders are read.
    """

    df = _frame(rows)
    writer = _BatchWriter(catalog, PriceSource.VENDOR_PO, PO_CONFIDENCE)
    for record in df.to_dict("records"):
        status = _text(record.get("STATUS")).upper().replace(" ", "_")
        if status and status not in ELIGIBLE_PO_STATUSES:
            continue
        writer.add(
            description=_text(record.get("DESCRIPTION")),
            unit_price=_price(record.get("UNIT_PRICE")),
            source_ref=po_source_ref(_text(record.get("ORDER_NUMBER")), _text(record.get("ITEM_ID"))),
            unit=normalize_unit(_text(record.get("UNIT")) or None),
            vendor=_text(record.get("VENDOR_NAME")),
        )
    result = writer.result
    LOGGER.info(
        "PO extraction complete: %d lines, %d prices inserted, %d new materials, %d skipped",
        result.lines_processed,
        result.prices_inserted,
        result.materials_created,
        result.skipped,
    )
    return result


def extract_from_cost_sheets(catalog: PriceCatalog, rows: Rows) -> ExtractionResult:
    """
    Record ``COST_SHEET`` prices from historical cost-sheet items.

    Expected columns: ``ITEM_ID``, ``DESCRIPTION``, ``UNIT_COST`` and
    optionally ``VENDOR`` and ``DAYS``.  Items priced by the day get the
    ``day`` unit.
    """

    df = _frame(rows)
    writer = _BatchWriter(catalog, PriceSource.COST_SHEET, COST_SHEET_CONFIDENCE)
    for record in df.to_dict("records"):
        days = _price(record.get("DAYS"))
        writer.add(
            description=_text(record.get("DESCRIPTION")),
            unit_price=_price(record.get("UNIT_COST")),
            source_ref=cost_sheet_source_ref(_text(record.get("ITEM_ID"))),
            unit="day" if days else "piece",
            vendor=_text(record.get("VENDOR")),
        )
    result = writer.result
    LOGGER.info(
        "Cost sheet extraction: %d prices from %d items (%d skipped)",
        result.prices_inserted,
        result.lines_processed,
        result.skipped,
    )
    return result


__all__ = [
    "ExtractionResult",
    "cost_sheet_source_ref",
    "extract_from_cost_sheets",
    "extract_from_purchase_orders",
    "po_source_ref",
    "read_rows",
]
