import pandas as pd

from .margin import MarginDashboard
from .models import CostEstimate, ResolvedPrice


def lines_frame(estimate: CostEstimate) -> pd.DataFrame:
    columns = ["MATERIAL", "QUANTITY", "UNIT", "UNIT_PRICE", "LINE_TOTAL", "SOURCE", "CONFIDENCE"]
    rows = [
        [line.material_name, line.quantity, line.unit, line.unit_price, line.line_total, line.source, line.confidence]
        for line in estimate.lines
    ]
    return pd.DataFrame(rows, columns=columns)


def make_summary_text(estimate: CostEstimate, currency: str = "OMR") -> str:
    lines_df = lines_frame(estimate)
    top = lines_df.sort_values("LINE_TOTAL", ascending=False).head(5)
    weak = int((lines_df["CONFIDENCE"] == 0).sum()) if not lines_df.empty else 0
    margin = "n/a" if estimate.margin is None else f"{estimate.margin:.1f}%"
    selling = "n/a" if estimate.selling_price is None else f"{estimate.selling_price:,.3f} {currency}"
    text = (
        f"Estimate {estimate.id}: {estimate.title}\n"
        f"Material {estimate.material_cost:,.3f} + labour {estimate.labour_cost:,.3f} "
        f"+ overhead {estimate.overhead_cost:,.3f} = {estimate.total_cost_price:,.3f} {currency}.\n"
        f"Selling price {selling}, margin {margin}, confidence {estimate.confidence_score}/100.\n"
    )
    if not top.empty:
        text += f"Top cost drivers:\n{top.to_string(index=False)}\n"
    if weak:
        text += f"{weak} line(s) have no price data and were costed at zero.\n"
    return text


def make_price_text(material_name: str, resolved: ResolvedPrice, currency: str = "OMR") -> str:
    text = f"{material_name}: {resolved.unit_price:,.3f} {currency} (source {resolved.source}, confidence {resolved.confidence:.2f})"
    if resolved.tag is not None:
        text += f" via {resolved.tag}"
    return text


def make_dashboard_text(dashboard: MarginDashboard) -> str:
    summary = dashboard.summary
    header = (
        f"{summary.total} estimate(s), {summary.at_risk} below the {summary.target_margin:.1f}% target, "
        f"average margin {summary.avg_margin:.1f}%.\n"
    )
    df = dashboard.to_frame()
    if df.empty:
        return header
    df["MARGIN"] = df["MARGIN"].map(lambda m: "n/a" if pd.isna(m) else f"{m:.1f}")
    return header + df[["TITLE", "CATEGORY", "TOTAL_COST", "SELLING_PRICE", "MARGIN", "AT_RISK"]].to_string(index=False) + "\n"
