"""
Shift Report — generation, archiving, and export
=================================================
Entry points an outer layer (HTTP handler, scheduler, CLI) calls:

  generate_shift_report(shift_id, ...)   -> report dict
  aggregate_window(ledger, asset_id, start, end) -> [AssetAggregate]
  archive_shift_report(shift_id, ...)    -> saved SHIFT_REPORT Archive
  end_shift(...)                          -> close + archive report and events

Reports for open shifts are provisional (is_final=False) and reflect the
ledger as of *now*. Archives are point-in-time; regenerating simply
produces another archive.
"""

import logging
from datetime import datetime

import numpy as np
import pandas as pd

from aggregator import aggregate_events
from archive import build_archive, build_event_archive
from event_ledger import events_frame
from metrics import calc_shift_metrics
from shared import (
    RUNNING, STOPPED, AssetNotFoundError, classify_stop_reason, iso,
    load_settings, round_pct, to_utc, utc_now,
)
from shift_window import carried_over_since, carried_over_states, resolve_window, select_events

logger = logging.getLogger(__name__)

DEFAULT_REPORT_OPTIONS = {
    "include_raw_data": False,
    "is_final": True,
    "performance": None,
    "quality": None,
}


# ---------------------------------------------------------------------------
# Aggregation entry points
# ---------------------------------------------------------------------------

def aggregate_window(ledger, asset_id, start, end, settings=None):
    """Aggregates for one asset (or all assets when asset_id is None) over [start, end)."""
    settings = settings or load_settings()
    start = to_utc(start)
    end = to_utc(end)
    if end < start:
        raise ValueError(f"Window end {end.isoformat()} is before start {start.isoformat()}")
    if asset_id is not None and not ledger.has_asset(asset_id):
        raise AssetNotFoundError(f"Asset {asset_id} has no events in the ledger")

    events = ledger.query(asset_id=asset_id, start=start, end=end)
    prior = ledger.last_known_states(start, asset_id=asset_id)
    since = ledger.state_entry_times(start, asset_id=asset_id)
    return aggregate_events(events, start, end, prior_states=prior, settings=settings,
                            prior_since=since)


def _compute_shift(shift, ledger, settings, now, options):
    window = resolve_window(shift, now=now)
    events = select_events(ledger, window)
    aggregates = aggregate_events(events, window.start, window.end,
                                  prior_states=carried_over_states(ledger, window),
                                  settings=settings,
                                  prior_since=carried_over_since(ledger, window))
    # A caller can mark a closed shift's report provisional, never the reverse.
    is_final = window.is_final and bool(options["is_final"])
    metrics = calc_shift_metrics(
        aggregates,
        performance=options["performance"],
        quality=options["quality"],
        is_final=is_final,
        settings=settings,
    )
    return window, events, aggregates, metrics


def _generation_metadata(window, events, aggregates, metrics, settings, generated_at):
    return {
        "generated_at": iso(generated_at),
        "window_start": iso(window.start),
        "window_end": iso(window.end),
        "window_seconds": round(window.duration_seconds, 3),
        "is_final": metrics.is_final,
        "events_processed": len(events),
        "assets_analyzed": len(aggregates),
        "warning_count": sum(len(a.warnings) for a in aggregates),
        "micro_stop_threshold_seconds": settings.micro_stop_threshold_seconds,
        "micro_stop_policy": settings.micro_stop_policy,
    }


def generate_shift_report(shift_id, ledger, registry, options=None, settings=None, now=None):
    """Build the report for one shift without persisting anything.

    options: include_raw_data (adds raw_events), is_final, and optional
    measured performance / quality fractions.
    Raises ShiftNotFoundError for an unknown shift_id.
    """
    options = {**DEFAULT_REPORT_OPTIONS, **(options or {})}
    settings = settings or load_settings()
    shift = registry.get(shift_id)

    window, events, aggregates, metrics = _compute_shift(shift, ledger, settings, now, options)
    generated_at = now if now is not None else utc_now()

    report = {
        "shift": shift.to_record(),
        "per_asset_metrics": [a.to_record() for a in aggregates],
        "shift_metrics": metrics.to_record(),
        "downtime_pareto": build_downtime_pareto(events),
        "generation_metadata": _generation_metadata(
            window, events, aggregates, metrics, settings, generated_at),
    }
    if options["include_raw_data"]:
        report["raw_events"] = [e.to_record() for e in events]

    logger.info(
        "Shift %d report: %d events, %d assets, availability %.1f%%, OEE %.1f%% (%s)",
        shift.id, len(events), len(aggregates), metrics.availability_pct, metrics.oee_pct,
        "final" if metrics.is_final else "provisional",
    )
    return report


# ---------------------------------------------------------------------------
# Archiving
# ---------------------------------------------------------------------------

def archive_shift_report(shift_id, ledger, registry, store, options=None, settings=None, now=None):
    """Generate a shift report and save it as a new SHIFT_REPORT archive."""
    options = {**DEFAULT_REPORT_OPTIONS, **(options or {})}
    settings = settings or load_settings()
    shift = registry.get(shift_id)

    window, events, aggregates, metrics = _compute_shift(shift, ledger, settings, now, options)
    # One stamp for both the metadata and the archive record.
    generated_at = now if now is not None else utc_now()
    metadata = _generation_metadata(window, events, aggregates, metrics, settings, generated_at)
    extra = {"downtime_pareto": build_downtime_pareto(events)}
    if options["include_raw_data"]:
        extra["raw_events"] = [e.to_record() for e in events]

    archive = build_archive(shift, aggregates, metrics, metadata=metadata, extra=extra,
                            created_at=generated_at)
    store.save(archive)
    return archive


def archive_shift_events(shift_id, ledger, registry, store, now=None):
    """Save the shift's raw event slice as an EVENTS archive."""
    shift = registry.get(shift_id)
    window = resolve_window(shift, now=now)
    archive = build_event_archive(shift, select_events(ledger, window), created_at=now)
    store.save(archive)
    return archive


def end_shift(registry, ledger, store, shift_id=None, end_time=None, settings=None):
    """Close a shift (the open one by default) and archive its report and events.

    Returns (shift, report_archive, event_archive).
    """
    if shift_id is None:
        current = registry.current_shift()
        if current is None:
            raise ValueError("No open shift to end")
        shift_id = current.id
    shift = registry.close_shift(shift_id, end_time=end_time)
    report_archive = archive_shift_report(shift.id, ledger, registry, store, settings=settings)
    event_archive = archive_shift_events(shift.id, ledger, registry, store)
    return shift, report_archive, event_archive


# ---------------------------------------------------------------------------
# Downtime Pareto
# ---------------------------------------------------------------------------

def build_downtime_pareto(events, top_n=10):
    """Closed stops grouped by stop reason, largest first.

    The reason is usually entered when the asset stops, so it is carried
    forward from the STOPPED event to the restart that closes the stop.
    """
    if not events:
        return []
    df = events_frame(events).sort_values(["asset_id", "timestamp"], kind="mergesort")

    entered = df["stop_reason"].fillna("").where(df["new_state"] == STOPPED)
    df["open_reason"] = entered.groupby(df["asset_id"]).ffill().replace("", np.nan)
    df["elapsed"] = df.groupby("asset_id")["timestamp"].diff().dt.total_seconds()

    # Restarts follow the asset's observed state, the same way the aggregator
    # counts stops; the declared previous_state only covers each asset's first row.
    observed_prior = df.groupby("asset_id")["new_state"].shift()
    prior_state = observed_prior.where(observed_prior.notna(), df["previous_state"])
    restarts = df[(df["new_state"] == RUNNING) & (prior_state == STOPPED)].copy()
    if len(restarts) == 0:
        return []
    restarts["reason"] = restarts["stop_reason"].fillna(restarts["open_reason"]).fillna("Unassigned")
    restarts["minutes"] = restarts["duration_seconds"].fillna(restarts["elapsed"]).fillna(0) / 60.0

    grouped = (
        restarts.groupby("reason")
        .agg(total_minutes=("minutes", "sum"), events=("minutes", "size"))
        .reset_index()
        .sort_values(["total_minutes", "reason"], ascending=[False, True])
        .head(top_n)
    )
    total = float(restarts["minutes"].sum())

    rows = []
    for _, row in grouped.iterrows():
        rows.append({
            "cause": str(row["reason"]),
            "category": classify_stop_reason(row["reason"]),
            "total_minutes": round(float(row["total_minutes"]), 1),
            "events": int(row["events"]),
            "pct_of_total": round_pct(row["total_minutes"] / total * 100) if total > 0 else 0.0,
        })
    return rows


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def _report_tables(report):
    """Report dict -> ordered {sheet name: DataFrame}."""
    sm = report["shift_metrics"]
    shift = report["shift"]
    meta = report.get("generation_metadata", {})

    summary = pd.DataFrame([
        {"Metric": "Shift", "Value": f"{shift['name']} (#{shift['id']})"},
        {"Metric": "Window", "Value": f"{meta.get('window_start', shift['start_time'])} to "
                                      f"{meta.get('window_end', shift['end_time'])}"},
        {"Metric": "Status", "Value": "Final" if sm["is_final"] else "Provisional"},
        {"Metric": "Availability", "Value": f"{sm['availability_pct']:.1f}%"},
        {"Metric": "Performance", "Value": f"{sm['performance_pct']:.1f}%"},
        {"Metric": "Quality", "Value": f"{sm['quality_pct']:.1f}%"},
        {"Metric": "OEE", "Value": f"{sm['oee_pct']:.1f}%"},
        {"Metric": "Runtime (min)", "Value": f"{sm['total_runtime_seconds'] / 60:,.1f}"},
        {"Metric": "Downtime (min)", "Value": f"{sm['total_downtime_seconds'] / 60:,.1f}"},
        {"Metric": "Stops", "Value": str(sm["total_stops"])},
        {"Metric": "Micro Stops", "Value": str(sm["total_micro_stops"])},
    ])

    assets = pd.DataFrame([{
        "Asset": a["asset_id"],
        "Runtime (min)": round(a["runtime_seconds"] / 60, 1),
        "Downtime (min)": round(a["downtime_seconds"] / 60, 1),
        "Stops": a["stop_count"],
        "Micro Stops": a["micro_stop_count"],
        "Availability %": a["availability_pct"],
        "Last State": a["last_state"] or "",
        "Warnings": len(a["warnings"]),
    } for a in report["per_asset_metrics"]],
        columns=["Asset", "Runtime (min)", "Downtime (min)", "Stops", "Micro Stops",
                 "Availability %", "Last State", "Warnings"])

    tables = {"Shift Summary": summary, "Asset Metrics": assets}

    pareto = report.get("downtime_pareto") or []
    if pareto:
        tables["Downtime Pareto"] = pd.DataFrame([{
            "Cause": p["cause"], "Category": p["category"], "Total Minutes": p["total_minutes"],
            "Events": p["events"], "% of Total": p["pct_of_total"],
        } for p in pareto])

    if "raw_events" in report:
        tables["Raw Events"] = pd.DataFrame(report["raw_events"])
    return tables


def write_report_excel(report, output_path):
    """Write a report dict to a formatted workbook."""
    tables = _report_tables(report)
    title_suffix = "" if report["shift_metrics"]["is_final"] else " (provisional)"

    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        workbook = writer.book

        header_fmt = workbook.add_format({
            "bold": True, "bg_color": "#1B2A4A", "font_color": "white",
            "border": 1, "text_wrap": True, "valign": "vcenter", "font_size": 11
        })
        title_fmt = workbook.add_format({"bold": True, "font_size": 14, "font_color": "#1B2A4A"})
        subtitle_fmt = workbook.add_format({"italic": True, "font_size": 10, "font_color": "#666666"})

        for sheet_name, df in tables.items():
            safe_name = sheet_name[:31]
            df.to_excel(writer, sheet_name=safe_name, startrow=2, index=False)
            ws = writer.sheets[safe_name]

            ws.write(0, 0, sheet_name + title_suffix, title_fmt)
            ws.write(1, 0, f"Generated {datetime.now().strftime('%Y-%m-%d %H:%M')}", subtitle_fmt)

            for col_num, col_name in enumerate(df.columns):
                ws.write(2, col_num, col_name, header_fmt)

            # Auto-width
            for col_num, col_name in enumerate(df.columns):
                max_len = max(
                    df[col_name].astype(str).map(len).max() if len(df) > 0 else 0,
                    len(str(col_name))
                )
                ws.set_column(col_num, col_num, min(max_len + 4, 60))

            if "Availability %" in df.columns and len(df) > 0:
                col_idx = list(df.columns).index("Availability %")
                ws.conditional_format(3, col_idx, 2 + len(df), col_idx, {
                    "type": "3_color_scale",
                    "min_color": "#F8696B", "mid_color": "#FFEB84", "max_color": "#63BE7B",
                })

            if sheet_name == "Downtime Pareto" and len(df) > 0:
                col_idx = list(df.columns).index("Total Minutes")
                ws.conditional_format(3, col_idx, 2 + len(df), col_idx, {
                    "type": "3_color_scale",
                    "min_color": "#63BE7B", "mid_color": "#FFEB84", "max_color": "#F8696B",
                })

    logger.info("Wrote shift report workbook %s", output_path)
    return output_path


def export_events_csv(events, output_path):
    """CSV export of an event slice, one row per event."""
    df = events_frame(events)
    out = pd.DataFrame({
        "Timestamp": df["timestamp"].dt.strftime("%Y-%m-%d %H:%M:%S"),
        "Asset": df["asset_id"],
        "Event Type": df["event_type"],
        "Previous State": df["previous_state"].fillna(""),
        "New State": df["new_state"],
        "Duration (minutes)": (df["duration_seconds"] / 60).round(1),
        "Stop Reason": df["stop_reason"].fillna(""),
    })
    out.to_csv(output_path, index=False)
    return output_path
