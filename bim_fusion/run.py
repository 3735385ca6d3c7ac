#!/usr/bin/env python3
"""
run.py — CLI entry-point for bim-fusion.

Opens an IFC model, joins external spreadsheets onto its elements, applies
calculated columns and an optional schema, then prints an aggregation table.

Usage
-----
    python -m bim_fusion.run model.ifc --list-properties
    python -m bim_fusion.run model.ifc --group-by Category --sum NetVolume
    python -m bim_fusion.run model.ifc --source cost.csv --map Tag="Element ID" \\
        --calc "Total=[Unit Cost] * [Quantity]" --group-by Category --sum Total
    python -m bim_fusion.run model.ifc --group-by Category Material \\
        --filter Category:equals:IfcWall --filter Material:contains:steel --any
    python -m bim_fusion.run model.ifc --group-by Category --live --output out.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

from tabulate import tabulate

from bim_fusion.aec_client import AecDataModelClient
from bim_fusion.aggregation import AggregationQuery, table_rows
from bim_fusion.config import __version__
from bim_fusion.model_source import IfcModelSource
from bim_fusion.records import (
    Calculation,
    FilterCondition,
    FilterOperator,
    LogicalOperator,
    SyncStatus,
)
from bim_fusion.schema import load_schema_file
from bim_fusion.session import FusionSession, SyncReport


# ── ANSI colour helpers ──────────────────────────────────────────────────────

_COLOURS = {
    SyncStatus.SUCCESS: "\033[92m",   # green
    SyncStatus.ERROR:   "\033[91m",   # red
    SyncStatus.WARNING: "\033[93m",   # yellow
    SyncStatus.PENDING: "\033[90m",   # grey
}
_RESET = "\033[0m"
_BOLD  = "\033[1m"


def _coloured(status: SyncStatus) -> str:
    c = _COLOURS.get(status, "")
    return f"{c}{status.value.upper():>7}{_RESET}"


# ── Argument parsing ─────────────────────────────────────────────────────────

def _pair(text: str) -> tuple[str, str]:
    name, sep, value = text.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {text!r}")
    return name.strip(), value.strip()


def _filter(text: str) -> FilterCondition:
    parts = text.split(":", 2)
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"expected ATTR:OP:VALUE, got {text!r}")
    attribute, op, value = parts
    try:
        operator = FilterOperator(op)
    except ValueError:
        choices = ", ".join(o.value for o in FilterOperator)
        raise argparse.ArgumentTypeError(f"unknown operator {op!r} (choose from {choices})")
    return FilterCondition(attribute, operator, value)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bim-fusion",
        description="Fuse IFC element properties with external sheets and aggregate them.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  bim-fusion model.ifc --list-properties\n"
            "  bim-fusion model.ifc --group-by Category --sum NetVolume\n"
            "  bim-fusion model.ifc --source cost.csv --map Tag=ElementID --group-by Category"
        ),
    )
    p.add_argument("ifc_file", help="Path to the IFC file to analyse.")
    p.add_argument("--urn", default=None,
                   help="Cloud URN of the model; enables the AEC Data Model discovery layer.")
    p.add_argument("--source", action="append", default=[], metavar="PATH",
                   help="External .csv/.xlsx source (repeatable).")
    p.add_argument("--map", action="append", default=[], type=_pair, metavar="MODELKEY=FILEKEY",
                   help="Join keys for the source at the same position (repeatable).")
    p.add_argument("--calc", action="append", default=[], type=_pair, metavar="NAME=FORMULA",
                   help="Calculated column, e.g. 'Total=[Cost] * [Qty]' (repeatable).")
    p.add_argument("--schema", default=None, metavar="FILE",
                   help="JSON schema mapping file.")
    p.add_argument("--list-properties", action="store_true",
                   help="Print the discovered property catalog.")
    p.add_argument("--group-by", nargs="+", default=[], metavar="ATTR",
                   help="Attribute(s) to group by.")
    p.add_argument("--sum", default=None, dest="sum_attribute", metavar="ATTR",
                   help="Numeric attribute to total per group.")
    p.add_argument("--filter", action="append", default=[], type=_filter, dest="filters",
                   metavar="ATTR:OP:VALUE", help="Filter condition; OP is equals|contains|not_equals.")
    p.add_argument("--any", action="store_true",
                   help="Combine filters with OR instead of AND.")
    p.add_argument("--scope", nargs="+", type=int, default=None, metavar="ID",
                   help="Restrict aggregation to these element ids.")
    p.add_argument("--live", action="store_true",
                   help="Skip the sync and query the model directly.")
    p.add_argument("--output", "-o", default=None,
                   help="Export results to a JSON file.")
    p.add_argument("--verbose", "-v", action="store_true",
                   help="Enable debug logging.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


# ── Pretty printing ──────────────────────────────────────────────────────────

def _print_sync(session: FusionSession, report: SyncReport, elapsed: float) -> None:
    print(f"\n{'─' * 60}")
    print(f"{_BOLD}▸ sync{_RESET}  ({elapsed:.2f}s)  {report.dataset_size} record(s)")
    print(f"{'─' * 60}")
    for src in session.sources:
        status = _coloured(report.statuses.get(src.source_id, src.sync_status))
        stats = report.stats.get(src.source_id)
        print(f"  {status}  {src.file_name}")
        if stats:
            print(f"           matched: {stats.match_count}/{stats.total_rows} rows")
        if not src.mapping.is_complete:
            print("           note   : mapping incomplete")
        if src.last_error:
            print(f"           note   : {src.last_error}")


def _print_catalog(catalog: list[str]) -> None:
    print(f"\n{_BOLD}Properties ({len(catalog)}):{_RESET}\n")
    for name in catalog:
        print(f"  {name}")


def _print_table(rows: list[dict], query: AggregationQuery, sums: dict) -> None:
    headers = [*query.group_by, "Count", "%"]
    if query.sum_attribute and not query.is_multi:
        headers.append(f"Σ {query.sum_attribute}")
    table = []
    for r in rows:
        line = [r.get(a) for a in query.group_by] + [r["count"], f"{r['percentage']:.1f}"]
        if query.sum_attribute and not query.is_multi:
            line.append(round(sums.get(r[query.group_by[0]], 0.0), 2))
        table.append(line)
    print("\n" + tabulate(table, headers=headers, tablefmt="github"))
    print(f"\nGroups : {len(rows)}")
    print(f"Total  : {sum(r['count'] for r in rows)}")


def _export_json(payload: dict, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)
    print(f"  Results exported to: {path}")


# ── Pipeline ─────────────────────────────────────────────────────────────────

async def run_pipeline(session: FusionSession, args: argparse.Namespace) -> tuple[int, dict]:
    payload: dict = {"tool": "bim-fusion", "version": __version__}

    if not args.live:
        t0 = time.perf_counter()
        report = await session.sync()
        _print_sync(session, report, time.perf_counter() - t0)
        payload["sync"] = {
            "records": report.dataset_size,
            "error": report.error,
            "sources": {
                sid: {
                    "status": status.value,
                    "matches": report.stats[sid].match_count if sid in report.stats else None,
                    "error": report.source_errors.get(sid),
                }
                for sid, status in report.statuses.items()
            },
        }
        if not report.ok:
            print(f"\033[91mError: {report.error}\033[0m", file=sys.stderr)
            return 1, payload

    if args.list_properties:
        catalog = await session.discover()
        _print_catalog(catalog)
        payload["properties"] = catalog

    if args.group_by:
        query = AggregationQuery(
            group_by=args.group_by,
            filters=args.filters,
            logical_operator=LogicalOperator.OR if args.any else LogicalOperator.AND,
            sum_attribute=args.sum_attribute,
            scope=args.scope,
        )
        result = await session.aggregate(query, live=args.live)
        rows = table_rows(result, query.group_by)
        sums = {} if query.is_multi else {k: b.sum for k, b in result.items()}
        _print_table(rows, query, sums)
        payload["rows"] = [
            {**r, "sum": sums[r[query.group_by[0]]]} if query.sum_attribute and not query.is_multi else r
            for r in rows
        ]

    return 0, payload


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if len(args.map) > len(args.source):
        parser.error("--map given without a matching --source")

    ifc_path = Path(args.ifc_file).resolve()
    if not ifc_path.is_file():
        print(f"\033[91mError: File not found: {ifc_path}\033[0m", file=sys.stderr)
        return 1
    if ifc_path.suffix.lower() != ".ifc":
        print(f"\033[93mWarning: File does not have .ifc extension: {ifc_path.name}\033[0m")

    # ── Logging ───────────────────────────────────────────────────────────
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)-8s %(name)s: %(message)s",
    )

    # ── Open IFC model ────────────────────────────────────────────────────
    print(f"\n{_BOLD}bim-fusion {__version__}{_RESET}")
    print(f"{'═' * 60}")
    print(f"  File : {ifc_path.name}")

    try:
        t0 = time.perf_counter()
        model = IfcModelSource.open(ifc_path, urn=args.urn)
        print(f"  Schema : {model.model.schema}")
        print(f"  Loaded in {time.perf_counter() - t0:.2f}s")
    except Exception as exc:
        print(f"\033[91mError: Cannot open IFC file: {exc}\033[0m", file=sys.stderr)
        return 1

    session = FusionSession(model, aec_client=AecDataModelClient() if args.urn else None)

    for i, path in enumerate(args.source):
        model_key, file_key = args.map[i] if i < len(args.map) else ("", "")
        session.add_source(path, model_key, file_key)

    try:
        session.set_calculations([Calculation(n, f) for n, f in args.calc])
        if args.schema:
            session.set_schema(load_schema_file(args.schema))
    except (OSError, ValueError) as exc:
        print(f"\033[91mError: {exc}\033[0m", file=sys.stderr)
        return 1

    code, payload = asyncio.run(run_pipeline(session, args))

    if args.output:
        _export_json(payload, args.output)
    return code


if __name__ == "__main__":
    sys.exit(main())
