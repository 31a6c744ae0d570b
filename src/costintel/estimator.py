"""
Cost estimation pipeline.

Each BOM line is priced through the resolver, then costs roll up as::

    material = sum(line totals)
    labour   = flat rate
    overhead = (material + labour) * overhead%
    total    = material + labour + overhead

Lines that cannot be priced stay on the estimate at zero cost and zero
confidence, which pulls the overall confidence score down.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import selectinload, sessionmaker

from .catalog import normalize_name
from .db import CostEstimateRow, EstimateLineRow, shares_one_connection
from .dissect import SingleLineDissector, coerce_bom_lines
from .margin import DEFAULT_TARGET_MARGIN_PERCENT, MarginDashboard, compute_margin, margin_dashboard
from .models import (
    NO_PRICE_SOURCE,
    BOMLine,
    CostEstimate,
    EstimateLine,
    NotFoundError,
    ResolvedPrice,
    round_half_up,
    utcnow,
)
from .price_logic import PriceResolver

LOGGER = logging.getLogger(__name__)

MONEY_DIGITS = 3


def _money(value: float) -> float:
    return round_half_up(value, MONEY_DIGITS)


def _validate_selling_price(value: Any) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Selling price must be numeric, got {value!r}") from None
    if not math.isfinite(price) or price <= 0:
        raise ValueError(f"Selling price must be positive, got {value!r}")
    return price


class CostEngine:
    """Builds, stores and re-prices cost estimates."""

    def __init__(
        self,
        session_factory: sessionmaker,
        resolver: PriceResolver,
        *,
        labour_rate_flat: float = 15.0,
        overhead_percent: float = 10.0,
        target_margin_percent: float = DEFAULT_TARGET_MARGIN_PERCENT,
        dissector: Any = None,
        workers: int = 1,
        clock: Callable = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.resolver = resolver
        self.labour_rate_flat = float(labour_rate_flat)
        self.overhead_percent = float(overhead_percent)
        self.target_margin_percent = float(target_margin_percent)
        self.dissector = dissector or SingleLineDissector()
        self.workers = max(1, int(workers))
        if self.workers > 1 and shares_one_connection(session_factory):
            LOGGER.info("In-memory database shares one connection; resolving prices serially")
            self.workers = 1
        self._clock = clock

    def resolve_price(self, material_name: str, unit: Optional[str] = None) -> ResolvedPrice:
        return self.resolver.resolve_price(material_name, unit)

    # ----------------------------------------------------------------- estimates

    def create_estimate(
        self,
        title: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        client_name: Optional[str] = None,
        bom_lines: Optional[Iterable[BOMLine | Mapping[str, Any]]] = None,
        selling_price: Optional[float] = None,
    ) -> CostEstimate:
        title = " ".join((title or "").split())
        if not title:
            raise ValueError("Estimate title must not be empty")
        if selling_price is not None:
            selling_price = _validate_selling_price(selling_price)

        if bom_lines is None:
            lines = self.dissector.dissect(description or title, category)
            LOGGER.info("Dissected %r into %d BOM line(s)", title, len(lines))
        else:
            lines = coerce_bom_lines(bom_lines)

        prices = self._resolve_all(lines)
        priced: List[EstimateLine] = []
        for line in lines:
            resolved = prices[normalize_name(line.material_name)]
            priced.append(
                EstimateLine(
                    material_name=line.material_name,
                    quantity=line.quantity,
                    unit=line.unit,
                    unit_price=resolved.unit_price,
                    line_total=_money(resolved.unit_price * line.quantity),
                    source=resolved.source,
                    confidence=resolved.confidence,
                    detail=str(resolved.tag) if resolved.tag else None,
                )
            )

        material_cost = _money(sum(line.line_total for line in priced))
        labour_cost = _money(self.labour_rate_flat)
        overhead_cost = _money((material_cost + labour_cost) * self.overhead_percent / 100.0)
        total_cost = _money(material_cost + labour_cost + overhead_cost)
        confidence_score = self._confidence_score(priced)
        margin = compute_margin(selling_price, total_cost)

        now = self._clock()
        with self._session_factory.begin() as session:
            row = CostEstimateRow(
                title=title,
                description=description,
                category=category or None,
                client_name=client_name or None,
                material_cost=material_cost,
                labour_cost=labour_cost,
                overhead_cost=overhead_cost,
                total_cost_price=total_cost,
                selling_price=selling_price,
                margin=margin,
                confidence_score=confidence_score,
                created_at=now,
                updated_at=now,
            )
            row.lines = [
                EstimateLineRow(
                    position=position,
                    material_name=line.material_name,
                    quantity=line.quantity,
                    unit=line.unit,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                    source=line.source,
                    confidence=line.confidence,
                    detail=line.detail,
                )
                for position, line in enumerate(priced)
            ]
            session.add(row)
            session.flush()
            estimate = _to_estimate(row)

        LOGGER.info(
            "Created estimate %s %r: total %.3f, confidence %d, margin %s",
            estimate.id,
            title,
            total_cost,
            confidence_score,
            "n/a" if margin is None else f"{margin:.1f}%",
        )
        return estimate

    def get_estimate(self, estimate_id: str) -> CostEstimate:
        with self._session_factory() as session:
            row = session.get(CostEstimateRow, estimate_id)
            if row is None:
                raise NotFoundError(f"Estimate {estimate_id} not found")
            return _to_estimate(row)

    def list_estimates(self, category: Optional[str] = None) -> List[CostEstimate]:
        stmt = select(CostEstimateRow).options(selectinload(CostEstimateRow.lines))
        if category:
            stmt = stmt.where(CostEstimateRow.category.icontains(category.strip(), autoescape=True))
        stmt = stmt.order_by(CostEstimateRow.created_at.desc())
        with self._session_factory() as session:
            return [_to_estimate(row) for row in session.execute(stmt).scalars()]

    def update_selling_price(self, estimate_id: str, selling_price: float) -> CostEstimate:
        """Set a new selling price; only the margin is recomputed."""

        price = _validate_selling_price(selling_price)
        with self._session_factory.begin() as session:
            row = session.get(CostEstimateRow, estimate_id)
            if row is None:
                raise NotFoundError(f"Estimate {estimate_id} not found")
            row.selling_price = price
            row.margin = compute_margin(price, row.total_cost_price)
            row.updated_at = self._clock()
            session.flush()
            estimate = _to_estimate(row)
        LOGGER.info("Estimate %s selling price set to %.3f (margin %s)", estimate_id, price, estimate.margin)
        return estimate

    def margin_dashboard(
        self,
        category: Optional[str] = None,
        min_margin: Optional[float] = None,
        max_margin: Optional[float] = None,
    ) -> MarginDashboard:
        return margin_dashboard(
            self.list_estimates(),
            self.target_margin_percent,
            category=category,
            min_margin=min_margin,
            max_margin=max_margin,
        )

    # ------------------------------------------------------------------ helpers

    def _resolve_all(self, lines: Sequence[BOMLine]) -> Dict[str, ResolvedPrice]:
        """Resolve each distinct material once for this estimate."""

        pending: Dict[str, BOMLine] = {}
        for line in lines:
            pending.setdefault(normalize_name(line.material_name), line)

        if self.workers > 1 and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(pending))) as pool:
                results = list(pool.map(self._resolve_line, pending.values()))
        else:
            results = [self._resolve_line(line) for line in pending.values()]
        return dict(zip(pending.keys(), results))

    def _resolve_line(self, line: BOMLine) -> ResolvedPrice:
        try:
            return self.resolver.resolve_price(line.material_name, line.unit)
        except Exception:
            LOGGER.exception("Price resolution failed for %r; pricing the line at zero", line.material_name)
            return ResolvedPrice(0.0, NO_PRICE_SOURCE, 0.0)

    @staticmethod
    def _confidence_score(lines: Sequence[EstimateLine]) -> int:
        if not lines:
            return 0
        mean = sum(line.confidence for line in lines) / len(lines)
        return int(round_half_up(mean * 100.0, 0))


def _to_estimate(row: CostEstimateRow) -> CostEstimate:
    return CostEstimate(
        id=row.id,
        title=row.title,
        material_cost=row.material_cost,
        labour_cost=row.labour_cost,
        overhead_cost=row.overhead_cost,
        total_cost_price=row.total_cost_price,
        confidence_score=int(row.confidence_score),
        lines=tuple(
            EstimateLine(
                material_name=line.material_name,
                quantity=line.quantity,
                unit=line.unit,
                unit_price=line.unit_price,
                line_total=line.line_total,
                source=line.source,
                confidence=line.confidence,
                detail=line.detail,
            )
            for line in row.lines
        ),
        description=row.description,
        category=row.category,
        client_name=row.client_name,
        selling_price=row.selling_price,
        margin=row.margin,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


__all__ = ["CostEngine"]
