"""
Archive History + SPC for the Asset Shift Monitor
==================================================
Reads SHIFT_REPORT archives back out of the store and turns them into
cross-shift intelligence: control limits on OEE, a trend test, per-asset
availability, and chronic/emerging classification of stop reasons.

Regenerated reports mean one shift can have several archives. The
latest archive per shift wins, the same way re-analyzing a date range
keeps the latest run.

Dependencies: json, pandas, numpy.
"""

import json
import logging

import numpy as np
import pandas as pd

from shared import ARCHIVE_SHIFT_REPORT, iso, utc_now

logger = logging.getLogger(__name__)


# =========================================================================
# Load
# =========================================================================

def load_archive_history(store, final_only=True):
    """Flatten SHIFT_REPORT archives into DataFrames.

    Returns dict with keys: shifts, assets, downtime. Or None if there are
    no usable archives.
    """
    archives = store.list_archives(archive_type=ARCHIVE_SHIFT_REPORT)
    if not archives:
        return None

    shift_rows, asset_rows, dt_rows = [], [], []
    for archive in archives:
        data = archive.archived_data
        sm = data.get("shift_metrics", {})
        shift = data.get("shift", {})
        shift_rows.append({
            "archive_id": archive.id,
            "created_at": iso(archive.created_at),
            "shift_id": data.get("shift_id"),
            "shift_name": shift.get("name", ""),
            "start_time": shift.get("start_time"),
            "is_final": bool(sm.get("is_final", True)),
            "availability_pct": sm.get("availability_pct", 0.0),
            "performance_pct": sm.get("performance_pct", 0.0),
            "quality_pct": sm.get("quality_pct", 0.0),
            "oee_pct": sm.get("oee_pct", 0.0),
            "runtime_seconds": sm.get("total_runtime_seconds", 0.0),
            "downtime_seconds": sm.get("total_downtime_seconds", 0.0),
            "stops": sm.get("total_stops", 0),
            "micro_stops": sm.get("total_micro_stops", 0),
        })
        for a in data.get("per_asset_metrics", []):
            asset_rows.append({
                "archive_id": archive.id,
                "shift_id": data.get("shift_id"),
                "asset_id": a["asset_id"],
                "availability_pct": a.get("availability_pct", 0.0),
                "stop_count": a.get("stop_count", 0),
                "micro_stop_count": a.get("micro_stop_count", 0),
            })
        for d in data.get("downtime_pareto", []):
            dt_rows.append({
                "archive_id": archive.id,
                "shift_id": data.get("shift_id"),
                "cause": d["cause"],
                "minutes": d["total_minutes"],
            })

    shifts = pd.DataFrame(shift_rows)
    if final_only:
        shifts = shifts[shifts["is_final"]]
    if len(shifts) == 0:
        return None
    n_raw = len(shifts)

    # --- Deduplicate: same shift archived twice → keep latest ---
    shifts = (
        shifts.sort_values("created_at", kind="mergesort")
        .drop_duplicates(subset=["shift_id"], keep="last")
        .sort_values(["start_time", "shift_id"], kind="mergesort")
        .reset_index(drop=True)
    )
    valid_ids = set(shifts["archive_id"])

    assets = pd.DataFrame(asset_rows)
    if len(assets) > 0:
        assets = assets[assets["archive_id"].isin(valid_ids)].reset_index(drop=True)
    downtime = pd.DataFrame(dt_rows)
    if len(downtime) > 0:
        downtime = downtime[downtime["archive_id"].isin(valid_ids)].reset_index(drop=True)

    return {"shifts": shifts, "assets": assets, "downtime": downtime,
            "archives_raw": n_raw}


# =========================================================================
# Control charts over shifts
# =========================================================================

def _control_limits(shifts_df, column):
    """Individuals (X-mR) chart limits for one shift-level percentage.

    Sigma is the average moving range between consecutive shifts over
    d2 = 1.128. Limits are clipped to 0-100.
    Returns {} with fewer than 3 shifts.
    """
    values = shifts_df[column].astype(float)
    if len(values) < 3:
        return {}
    mean = float(values.mean())
    sigma = float(values.diff().abs().mean()) / 1.128
    return {
        "mean": round(mean, 1),
        "ucl": round(min(mean + 3 * sigma, 100.0), 1),
        "lcl": round(max(mean - 3 * sigma, 0.0), 1),
        "sigma": round(sigma, 2),
    }


def _out_of_control(shifts_df, column, label, limits):
    """Shifts whose metric falls outside the 3-sigma limits."""
    if not limits or limits["sigma"] <= 0:
        return []
    findings = []
    for _, row in shifts_df.iterrows():
        value = float(row[column])
        where = f"Shift {row['shift_id']} ({row['shift_name']})"
        if value > limits["ucl"]:
            findings.append(
                f"{where}: {label} {value:.1f}% is above the upper control limit "
                f"({limits['ucl']:.1f}%), find out what went right")
        elif value < limits["lcl"]:
            findings.append(
                f"{where}: {label} {value:.1f}% is below the lower control limit "
                f"({limits['lcl']:.1f}%), special cause")
    return findings


def _trend_test(shifts_df, column="oee_pct", label="OEE"):
    """Least-squares slope per shift across the history. None with fewer than 5 shifts."""
    if len(shifts_df) < 5:
        return None

    y = shifts_df[column].astype(float).values
    x = np.arange(len(y))
    slope, intercept = np.polyfit(x, y, 1)
    fitted = slope * x + intercept
    ss_tot = ((y - y.mean()) ** 2).sum()
    r_sq = 1 - ((y - fitted) ** 2).sum() / ss_tot if ss_tot > 0 else 0.0

    first, last = shifts_df.iloc[0], shifts_df.iloc[-1]
    span = f"shift {first['shift_id']} ({first['shift_name']}) to shift {last['shift_id']} ({last['shift_name']})"
    if abs(slope) < 0.3 or r_sq < 0.1:
        return f"{label} flat from {span}: {slope:+.2f} pts/shift (R²={r_sq:.2f})"

    direction = "improving" if slope > 0 else "declining"
    return (f"{label} {direction} from {span}: {y[0]:.1f}% to {y[-1]:.1f}%, "
            f"{slope:+.1f} pts/shift (R²={r_sq:.2f})")


# =========================================================================
# Stop reason persistence across shifts
# =========================================================================

def _classify_stop_reasons(shifts_df, downtime_df):
    """Classify each stop reason by how persistently it shows up across shifts.
    Returns list of dicts sorted by total minutes descending."""
    if len(downtime_df) == 0 or len(shifts_df) < 2:
        return []

    n_shifts = len(shifts_df)
    cause_stats = (
        downtime_df.groupby("cause")
        .agg(total_minutes=("minutes", "sum"), appearances=("shift_id", "nunique"))
        .reset_index()
    )

    shift_ids_ordered = list(shifts_df["shift_id"].values)
    recent_ids = set(shift_ids_ordered[-min(4, n_shifts):])

    results = []
    for _, row in cause_stats.iterrows():
        cause = row["cause"]
        appearances = int(row["appearances"])
        pct_shifts = appearances / n_shifts
        cause_ids = set(downtime_df[downtime_df["cause"] == cause]["shift_id"].values)

        streak = 0
        for sid in reversed(shift_ids_ordered):
            if sid in cause_ids:
                streak += 1
            else:
                break
        in_recent = sum(1 for sid in recent_ids if sid in cause_ids)

        if streak >= 4 or (appearances >= 4 and pct_shifts >= 0.6):
            status = "chronic"
        elif in_recent >= 2 and streak >= 2 and appearances < 4:
            status = "emerging"
        else:
            status = "intermittent"

        results.append({
            "cause": cause,
            "status": status,
            "appearances": appearances,
            "total_minutes": round(float(row["total_minutes"]), 0),
            "pct_shifts": round(pct_shifts * 100, 0),
            "current_streak": streak,
        })

    return sorted(results, key=lambda x: x["total_minutes"], reverse=True)


# =========================================================================
# Summary
# =========================================================================

def summarize_trends(history, output_path=None):
    """Consolidate archive history into SPC limits, trend, and determinations.

    Writes the summary as JSON to *output_path* when given.
    """
    if history is None:
        return None

    shifts = history["shifts"]
    assets = history["assets"]
    downtime = history["downtime"]
    n_shifts = len(shifts)
    findings = []

    spc = _control_limits(shifts, "oee_pct")
    availability_spc = _control_limits(shifts, "availability_pct")
    findings.extend(_out_of_control(shifts, "oee_pct", "OEE", spc))
    findings.extend(_out_of_control(shifts, "availability_pct", "availability", availability_spc))

    for column, label in [("oee_pct", "OEE"), ("availability_pct", "Availability")]:
        trend = _trend_test(shifts, column, label)
        if trend:
            findings.append(trend)

    asset_availability = []
    if len(assets) > 0:
        by_asset = (
            assets.groupby("asset_id")
            .agg(mean_availability=("availability_pct", "mean"),
                 shifts=("shift_id", "nunique"),
                 stops=("stop_count", "sum"),
                 micro_stops=("micro_stop_count", "sum"))
            .reset_index()
            .sort_values("mean_availability")
        )
        for _, row in by_asset.iterrows():
            asset_availability.append({
                "asset_id": row["asset_id"],
                "mean_availability_pct": round(float(row["mean_availability"]), 1),
                "shifts": int(row["shifts"]),
                "stops": int(row["stops"]),
                "micro_stops": int(row["micro_stops"]),
            })
        if len(asset_availability) > 1:
            worst = asset_availability[0]
            findings.append(
                f"Lowest availability: asset {worst['asset_id']} at "
                f"{worst['mean_availability_pct']:.1f}% over {worst['shifts']} shifts")

    classes = _classify_stop_reasons(shifts, downtime)
    for d in classes:
        if d["status"] == "chronic":
            findings.append(
                f"{d['cause']}: CHRONIC, present in {d['appearances']}/{n_shifts} shifts "
                f"({d['current_streak']} consecutive), {d['total_minutes']:,.0f} total minutes")
        elif d["status"] == "emerging":
            findings.append(
                f"{d['cause']}: EMERGING, appeared in last {d['current_streak']} consecutive shifts")

    summary = {
        "last_tended": iso(utc_now()),
        "total_shifts": n_shifts,
        "archives_raw": int(history.get("archives_raw", n_shifts)),
        "duplicates_removed": int(history.get("archives_raw", n_shifts)) - n_shifts,
        "spc": spc,
        "availability_spc": availability_spc,
        "asset_availability": asset_availability,
        "stop_reason_classifications": classes,
        "determinations": findings,
        "shifts": shifts.to_dict(orient="records"),
    }

    if output_path:
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, default=str)
        logger.info("Wrote trend summary to %s", output_path)

    return summary
