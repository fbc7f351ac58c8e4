"""CLI for the asset shift monitor: ingest, shifts, reports, archives."""

from __future__ import annotations

import argparse
import json
import logging
import os

from archive import ArchiveStore
from archive_history import load_archive_history, summarize_trends
from event_ingest import ingest_into_ledger
from event_ledger import EventLedger
from shared import load_settings
from shift_registry import ShiftRegistry
from shift_report import (
    aggregate_window, archive_shift_events, archive_shift_report, end_shift,
    generate_shift_report, write_report_excel,
)

EVENTS_FILE = "events.jsonl"
SHIFTS_FILE = "shifts.json"
ARCHIVES_FILE = "archives.jsonl"


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Asset shift monitor CLI")
    p.add_argument("--data-dir", required=True, help="Directory holding events, shifts, and archives")
    p.add_argument("--config", help="JSON settings file (overrides ASSET_MONITOR_CONFIG)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    p.add_argument(
        "--command",
        required=True,
        choices=["ingest", "open-shift", "close-shift", "report", "archive", "aggregate", "history"],
        help="Action to execute",
    )
    p.add_argument("--file", help="Logger export for --command ingest")
    p.add_argument("--name", help="Shift name for --command open-shift")
    p.add_argument("--shift-id", type=int, help="Shift for report/archive/close-shift")
    p.add_argument("--asset", help="Asset id for --command aggregate (default: all)")
    p.add_argument("--start", help="Window start (ISO timestamp)")
    p.add_argument("--end", help="Window end / shift close time (ISO timestamp)")
    p.add_argument("--raw", action="store_true", help="Include raw events in the report")
    p.add_argument("--events", action="store_true", help="Archive raw events instead of the report")
    p.add_argument("--xlsx", help="Also write the report to this workbook")
    return p


def _open_stores(data_dir, settings):
    os.makedirs(data_dir, exist_ok=True)
    ledger = EventLedger.load(os.path.join(data_dir, EVENTS_FILE),
                              drift_tolerance_seconds=settings.drift_tolerance_seconds)
    registry = ShiftRegistry(os.path.join(data_dir, SHIFTS_FILE))
    store = ArchiveStore(os.path.join(data_dir, ARCHIVES_FILE))
    return ledger, registry, store


def main() -> None:
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings(args.config)
    ledger, registry, store = _open_stores(args.data_dir, settings)

    if args.command == "ingest":
        if not args.file:
            raise SystemExit("--file is required for --command ingest")
        appended, warnings = ingest_into_ledger(ledger, args.file)
        result = {"appended": appended, "warnings": warnings}
    elif args.command == "open-shift":
        if not args.name:
            raise SystemExit("--name is required for --command open-shift")
        result = registry.open_shift(args.name, start_time=args.start).to_record()
    elif args.command == "close-shift":
        shift, report_archive, event_archive = end_shift(
            registry, ledger, store, shift_id=args.shift_id, end_time=args.end, settings=settings)
        result = {
            "shift": shift.to_record(),
            "report_archive_id": report_archive.id,
            "event_archive_id": event_archive.id,
        }
    elif args.command == "report":
        if args.shift_id is None:
            raise SystemExit("--shift-id is required for --command report")
        result = generate_shift_report(
            args.shift_id, ledger, registry, options={"include_raw_data": args.raw}, settings=settings)
        if args.xlsx:
            write_report_excel(result, args.xlsx)
    elif args.command == "archive":
        if args.shift_id is None:
            raise SystemExit("--shift-id is required for --command archive")
        if args.events:
            archive = archive_shift_events(args.shift_id, ledger, registry, store)
        else:
            archive = archive_shift_report(
                args.shift_id, ledger, registry, store,
                options={"include_raw_data": args.raw}, settings=settings)
        result = {"archive_id": archive.id, "title": archive.title, "archive_type": archive.archive_type}
    elif args.command == "aggregate":
        if not args.start or not args.end:
            raise SystemExit("--start and --end are required for --command aggregate")
        aggregates = aggregate_window(ledger, args.asset, args.start, args.end, settings=settings)
        result = [a.to_record() for a in aggregates]
    else:
        result = summarize_trends(load_archive_history(store))

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
