import argparse
import json
import logging
import os
from pathlib import Path
from typing import Any, List, Optional, Sequence

from dotenv import load_dotenv

from .api import Services, build_services
from .config import load_config
from .extraction import extract_from_cost_sheets, extract_from_purchase_orders, read_rows
from .models import NotFoundError, PriceSource
from .reporting import make_dashboard_text, make_price_text, make_summary_text

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

load_dotenv()


def _emit(payload: Any, as_json: bool, text: str) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text.rstrip())


def _bom_from_args(args: argparse.Namespace) -> Optional[List[dict]]:
    lines: List[dict] = []
    if args.bom_json:
        with Path(args.bom_json).open("r", encoding="utf-8") as f:
            raw = json.load(f)
        lines.extend(raw.get("lines", []) if isinstance(raw, dict) else raw)
    for name, quantity, unit in args.line or []:
        lines.append({"materialName": name, "quantity": quantity, "unit": unit})
    return lines or None


def cmd_resolve(services: Services, args: argparse.Namespace) -> int:
    resolved = services.resolver.resolve_price(args.name, args.unit)
    _emit(resolved.to_dict(), args.json, make_price_text(args.name, resolved, services.config.currency))
    return 0


def cmd_estimate(services: Services, args: argparse.Namespace) -> int:
    estimate = services.cost_engine.create_estimate(
        args.title,
        description=args.description,
        category=args.category,
        client_name=args.client,
        bom_lines=_bom_from_args(args),
        selling_price=args.selling_price,
    )
    _emit(estimate.to_dict(), args.json, make_summary_text(estimate, services.config.currency))
    return 0


def cmd_selling_price(services: Services, args: argparse.Namespace) -> int:
    estimate = services.cost_engine.update_selling_price(args.estimate_id, args.price)
    _emit(estimate.to_dict(), args.json, make_summary_text(estimate, services.config.currency))
    return 0


def cmd_show(services: Services, args: argparse.Namespace) -> int:
    estimate = services.cost_engine.get_estimate(args.estimate_id)
    _emit(estimate.to_dict(), args.json, make_summary_text(estimate, services.config.currency))
    return 0


def cmd_dashboard(services: Services, args: argparse.Namespace) -> int:
    dashboard = services.cost_engine.margin_dashboard(
        category=args.category,
        min_margin=args.min_margin,
        max_margin=args.max_margin,
    )
    payload = {
        "estimates": [dict(entry.estimate.to_dict(), atRisk=entry.at_risk) for entry in dashboard.estimates],
        "summary": dashboard.summary.to_dict(),
    }
    _emit(payload, args.json, make_dashboard_text(dashboard))
    return 0


def cmd_materials(services: Services, args: argparse.Namespace) -> int:
    df = services.catalog.materials_frame(args.search)
    if args.json:
        print(df.to_json(orient="records", date_format="iso", indent=2))
    elif df.empty:
        print("No materials found.")
    else:
        print(df.to_string(index=False))
    return 0


def cmd_add_price(services: Services, args: argparse.Namespace) -> int:
    observation = services.catalog.record_price(
        args.name,
        args.unit,
        args.price,
        args.source,
        vendor_name=args.vendor,
        source_ref=args.source_ref,
        category=args.category,
        confidence=args.confidence,
    )
    logger.info("Recorded %s price %.3f for %r", observation.source.value, observation.unit_price, args.name)
    return 0


def cmd_extract(services: Services, args: argparse.Namespace) -> int:
    rows = read_rows(Path(args.path))
    if args.kind == "po":
        result = extract_from_purchase_orders(services.catalog, rows)
    else:
        result = extract_from_cost_sheets(services.catalog, rows)
    text = (
        f"{result.lines_processed} lines, {result.prices_inserted} prices inserted, "
        f"{result.materials_created} new materials, {result.skipped} skipped, {len(result.errors)} errors"
    )
    _emit(result.to_dict(), args.json, text)
    return 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve material prices and build cost estimates")
    parser.add_argument("--database-url", help="SQLAlchemy database URL (default: DATABASE_URL or sqlite:///costintel.db)")
    parser.add_argument("--target-margin", type=float, help="Margin percent below which an estimate is at risk")
    parser.add_argument("--labour-rate", type=float, help="Flat labour cost added to every estimate")
    parser.add_argument("--overhead-percent", type=float, help="Overhead percent on material + labour")
    parser.add_argument("--lookup-config", help="YAML/JSON file configuring the online lookup tiers")
    parser.add_argument("--aliases-csv", help="CSV mapping material aliases to catalog names")
    parser.add_argument("--workers", type=int, help="Parallel price resolutions per estimate")
    parser.add_argument("--disable-ai", action="store_true", help="Do not call OpenAI for BOM dissection")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    parser.add_argument("-v", "--verbose", action="store_true", help="Increase logging verbosity")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("resolve", help="Resolve the best known price for a material")
    p.add_argument("name")
    p.add_argument("--unit", help="Unit hint for materials not yet in the catalog")
    p.set_defaults(handler=cmd_resolve)

    p = sub.add_parser("estimate", help="Create a cost estimate")
    p.add_argument("--title", required=True)
    p.add_argument("--description")
    p.add_argument("--category")
    p.add_argument("--client")
    p.add_argument("--line", nargs=3, action="append", metavar=("MATERIAL", "QTY", "UNIT"), help="BOM line; repeatable")
    p.add_argument("--bom-json", help="JSON file with BOM lines")
    p.add_argument("--selling-price", type=float)
    p.set_defaults(handler=cmd_estimate)

    p = sub.add_parser("selling-price", help="Set the selling price of an estimate")
    p.add_argument("estimate_id")
    p.add_argument("price", type=float)
    p.set_defaults(handler=cmd_selling_price)

    p = sub.add_parser("show", help="Show an estimate")
    p.add_argument("estimate_id")
    p.set_defaults(handler=cmd_show)

    p = sub.add_parser("dashboard", help="Margin dashboard")
    p.add_argument("--category")
    p.add_argument("--min-margin", type=float)
    p.add_argument("--max-margin", type=float)
    p.set_defaults(handler=cmd_dashboard)

    p = sub.add_parser("materials", help="List catalog materials")
    p.add_argument("--search")
    p.set_defaults(handler=cmd_materials)

    p = sub.add_parser("add-price", help="Record a price observation")
    p.add_argument("name")
    p.add_argument("price", type=float)
    p.add_argument("--unit", default="piece")
    p.add_argument("--source", default=PriceSource.MANUAL.value, choices=[s.value for s in PriceSource])
    p.add_argument("--vendor")
    p.add_argument("--source-ref")
    p.add_argument("--category")
    p.add_argument("--confidence", type=float)
    p.set_defaults(handler=cmd_add_price)

    p = sub.add_parser("extract", help="Import prices from purchase orders or cost sheets")
    p.add_argument("kind", choices=["po", "cost-sheet"])
    p.add_argument("path", help="CSV or XLSX file")
    p.set_defaults(handler=cmd_extract)

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        runtime_cfg = load_config(os.environ, args)
    except ValueError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error("Invalid configuration: %s", exc)
        return 2
    log_level = logging.DEBUG if runtime_cfg.verbose else logging.INFO
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    services: Optional[Services] = None
    try:
        services = build_services(runtime_cfg)
        return args.handler(services, args)
    except NotFoundError as exc:
        logger.error("%s", exc)
        return 2
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        return 2
    except Exception:  # pragma: no cover - defensive
        logger.exception("Unexpected error running %s", args.command)
        return 1
    finally:
        if services is not None:
            services.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
