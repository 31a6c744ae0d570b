from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class NotFoundError(LookupError):
    """Raised when an estimate or material id does not exist."""


class PriceSource(str, Enum):
    """Origin of a price observation, ranked by trust."""

    MANUAL = "MANUAL"
    VENDOR_PO = "VENDOR_PO"
    COST_SHEET = "COST_SHEET"
    ONLINE = "ONLINE"

    @property
    def priority(self) -> int:
        return SOURCE_PRIORITY[self]

    @classmethod
    def parse(cls, value: "PriceSource | str") -> "PriceSource":
        if isinstance(value, PriceSource):
            return value
        text = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown price source: {value!r}") from None


SOURCE_PRIORITY: Dict[PriceSource, int] = {
    PriceSource.MANUAL: 4,
    PriceSource.VENDOR_PO: 3,
    PriceSource.COST_SHEET: 2,
    PriceSource.ONLINE: 1,
}

# Resolution outcomes that are not backed by any observation.
NO_PRICE_SOURCE = "none"
EXPIRED_SOURCE = "expired"


class LookupTier(str, Enum):
    """Stage of the online lookup cascade that produced a price."""

    CACHE = "cache"
    COMMODITY = "commodity"
    REFERENCE = "reference"
    FREE_SEARCH = "search"
    KEYED_SEARCH = "keyed-search"


@dataclass(frozen=True)
class PriceTag:
    """Tagged description of where an online price came from."""

    tier: LookupTier
    detail: Optional[str] = None

    def __str__(self) -> str:
        if self.detail:
            return f"{self.tier.value}:{self.detail}"
        return self.tier.value


def utcnow() -> datetime:
    """Naive UTC timestamp; the catalog stores all timestamps this way."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def round_half_up(value: float, digits: int = 0) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Material:
    """A named, unit-priced resource or service tracked in the catalog."""

    id: str
    name: str
    unit: str
    category: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PriceObservation:
    """One recorded price for a material. Never mutated after creation."""

    id: str
    material_id: str
    source: PriceSource
    unit_price: float
    confidence: float
    recorded_at: datetime
    vendor_name: Optional[str] = None
    source_ref: Optional[str] = None
    expires_at: Optional[datetime] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class BOMLine:
    """One (material, quantity, unit) requirement within an estimate."""

    material_name: str
    quantity: float
    unit: str = "piece"


@dataclass(frozen=True)
class ResolvedPrice:
    """Best known unit price for a material name."""

    unit_price: float
    source: str
    confidence: float
    tag: Optional[PriceTag] = None
    observations_used: int = 0

    @property
    def has_data(self) -> bool:
        return self.source not in (NO_PRICE_SOURCE, EXPIRED_SOURCE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unitPrice": self.unit_price,
            "source": self.source,
            "confidence": self.confidence,
            "detail": str(self.tag) if self.tag else None,
        }


@dataclass(frozen=True)
class LookupResult:
    """Outcome of the online cascade; ``unit_price`` is ``None`` on a miss."""

    unit_price: Optional[float]
    source: str
    confidence: float
    tag: Optional[PriceTag] = None
    raw: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.unit_price is not None


@dataclass(frozen=True)
class EstimateLine:
    material_name: str
    quantity: float
    unit: str
    unit_price: float
    line_total: float
    source: str
    confidence: float
    detail: Optional[str] = None


@dataclass(frozen=True)
class CostEstimate:
    """Priced, costed and margin-annotated estimate."""

    id: str
    title: str
    material_cost: float
    labour_cost: float
    overhead_cost: float
    total_cost_price: float
    confidence_score: int
    lines: Tuple[EstimateLine, ...] = field(default_factory=tuple)
    description: Optional[str] = None
    category: Optional[str] = None
    client_name: Optional[str] = None
    selling_price: Optional[float] = None
    margin: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["lines"] = [asdict(line) for line in self.lines]
        for key in ("created_at", "updated_at"):
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        return data


__all__ = [
    "BOMLine",
    "CostEstimate",
    "EXPIRED_SOURCE",
    "EstimateLine",
    "LookupResult",
    "LookupTier",
    "Material",
    "NO_PRICE_SOURCE",
    "NotFoundError",
    "PriceObservation",
    "PriceSource",
    "PriceTag",
    "ResolvedPrice",
    "SOURCE_PRIORITY",
    "round_half_up",
    "utcnow",
]
