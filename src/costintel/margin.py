"""Margin computation and the at-risk dashboard."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .models import CostEstimate, round_half_up

DEFAULT_TARGET_MARGIN_PERCENT = 25.0


def compute_margin(selling_price: Optional[float], total_cost_price: float) -> Optional[float]:
    """Percent margin on the selling price, one decimal; ``None`` when undefined."""

    if selling_price is None or total_cost_price is None or total_cost_price <= 0:
        return None
    if selling_price == 0:
        return None
    return round_half_up((selling_price - total_cost_price) / selling_price * 100.0, 1)


def is_at_risk(margin: Optional[float], target_margin_percent: float = DEFAULT_TARGET_MARGIN_PERCENT) -> bool:
    return margin is not None and margin < target_margin_percent


@dataclass(frozen=True)
class MarginSummary:
    total: int
    at_risk: int
    avg_margin: float
    target_margin: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "atRisk": self.at_risk,
            "avgMargin": self.avg_margin,
            "targetMargin": self.target_margin,
        }


@dataclass(frozen=True)
class DashboardEntry:
    estimate: CostEstimate
    at_risk: bool


@dataclass(frozen=True)
class MarginDashboard:
    estimates: List[DashboardEntry] = field(default_factory=list)
    summary: MarginSummary = field(default_factory=lambda: MarginSummary(0, 0, 0.0, DEFAULT_TARGET_MARGIN_PERCENT))

    def to_frame(self) -> pd.DataFrame:
        return _frame([entry.estimate for entry in self.estimates], self.summary.target_margin)


def _frame(estimates: List[CostEstimate], target: float) -> pd.DataFrame:
    df = pd.DataFrame(
        {
            "ID": [e.id for e in estimates],
            "TITLE": [e.title for e in estimates],
            "CATEGORY": [e.category for e in estimates],
            "TOTAL_COST": [e.total_cost_price for e in estimates],
            "SELLING_PRICE": pd.Series([e.selling_price for e in estimates], dtype="float64"),
            "MARGIN": pd.Series([e.margin for e in estimates], dtype="float64"),
            "CONFIDENCE": [e.confidence_score for e in estimates],
        }
    )
    df["AT_RISK"] = df["MARGIN"].notna() & (df["MARGIN"] < target)
    return df


def margin_dashboard(
    estimates: Iterable[CostEstimate],
    target_margin_percent: float = DEFAULT_TARGET_MARGIN_PERCENT,
    *,
    category: Optional[str] = None,
    min_margin: Optional[float] = None,
    max_margin: Optional[float] = None,
) -> MarginDashboard:
    """
    Annotate ``estimates`` with an at-risk flag and summarize margins.

    ``category`` matches case-insensitively anywhere in the estimate category.
    Margin filters only keep estimates with a defined margin.  Rows are
    ordered by margin ascending, undefined margins last.
    """

    items = list(estimates)
    df = _frame(items, target_margin_percent)
    df["_POS"] = range(len(df))

    mask = pd.Series(True, index=df.index)
    if category:
        mask &= df["CATEGORY"].fillna("").astype(str).str.contains(category.strip(), case=False, regex=False)
    if min_margin is not None:
        mask &= df["MARGIN"] >= min_margin
    if max_margin is not None:
        mask &= df["MARGIN"] <= max_margin
    df = df.loc[mask].sort_values(["MARGIN", "_POS"], na_position="last")

    entries = [DashboardEntry(estimate=items[int(pos)], at_risk=bool(risk)) for pos, risk in zip(df["_POS"], df["AT_RISK"])]
    defined = df["MARGIN"].dropna()
    summary = MarginSummary(
        total=len(entries),
        at_risk=int(df["AT_RISK"].sum()),
        avg_margin=round_half_up(float(defined.mean()), 1) if not defined.empty else 0.0,
        target_margin=float(target_margin_percent),
    )
    return MarginDashboard(estimates=entries, summary=summary)


__all__ = [
    "DashboardEntry",
    "MarginDashboard",
    "MarginSummary",
    "compute_margin",
    "is_at_risk",
    "margin_dashboard",
]
