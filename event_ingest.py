"""Load field-logger exports (CSV/XLSX) into Events."""

from __future__ import annotations

import logging
import os
import re

import pandas as pd

from event_ledger import LedgerError
from models import Event
from shared import (
    EVENT_TYPE_ALIASES, EVENT_TYPE_FOR_STATE, SHIFT, STATE_ALIASES,
)

logger = logging.getLogger(__name__)


# Maps normalized header names found in logger exports to internal column names.
HEADER_TO_INTERNAL = {
    # Asset
    "assetid": "asset_id",
    "asset": "asset_id",
    "assetname": "asset_id",
    "machine": "asset_id",
    "machineid": "asset_id",
    "equipment": "asset_id",
    "equipmentid": "asset_id",
    # Event
    "eventtype": "event_type",
    "type": "event_type",
    "event": "event_type",
    "previousstate": "previous_state",
    "prevstate": "previous_state",
    "oldstate": "previous_state",
    "fromstate": "previous_state",
    "newstate": "new_state",
    "state": "new_state",
    "tostate": "new_state",
    # Time
    "timestamp": "timestamp",
    "time": "timestamp",
    "datetime": "timestamp",
    "eventtime": "timestamp",
    "ts": "timestamp",
    # Duration, in whatever unit the logger used
    "duration": "duration_seconds",
    "durationseconds": "duration_seconds",
    "durationsec": "duration_seconds",
    "durations": "duration_seconds",
    "durationms": "duration_ms",
    "durationmilliseconds": "duration_ms",
    "durationminutes": "duration_minutes",
    "durationmin": "duration_minutes",
    # Context
    "stopreason": "stop_reason",
    "reason": "stop_reason",
    "cause": "stop_reason",
    "loggerid": "logger_id",
    "logger": "logger_id",
    "eventid": "event_id",
    "id": "event_id",
}

REQUIRED_COLUMNS = ["asset_id", "new_state", "timestamp"]


def normalize_col(name):
    """Normalize a column header for fuzzy matching."""
    s = str(name).lower().strip()
    return re.sub(r"[^a-z0-9]+", "", s)


def rename_columns(df):
    """Rename export headers to internal names; first matching header wins."""
    header_map = {}
    claimed = set()
    for col in df.columns:
        internal = HEADER_TO_INTERNAL.get(normalize_col(col))
        if internal and internal not in claimed:
            header_map[col] = internal
            claimed.add(internal)
    return df.rename(columns=header_map)[list(header_map.values())]


def _canonical(value, aliases):
    if value is None or pd.isna(value):
        return None
    return aliases.get(str(value).strip().upper().replace(" ", "_"))


def _clean(value):
    if value is None or pd.isna(value):
        return None
    return value


def _text_id(value):
    """Identifier cell as text. Numeric ids read as float (blank cells) lose the trailing .0."""
    value = _clean(value)
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).strip()
    return text or None


def _read_table(path):
    ext = os.path.splitext(path)[1].lower()
    if ext in (".xlsx", ".xlsm"):
        return pd.read_excel(path, engine="openpyxl")
    if ext == ".csv":
        return pd.read_csv(path)
    raise ValueError(f"Unsupported logger export format: {ext or path} (expected .csv or .xlsx)")


def normalize_event_frame(df):
    """Coerce a raw export frame into Events. Returns (events, warnings)."""
    warnings: list[str] = []
    df = rename_columns(df.copy())

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Logger export missing required columns: {', '.join(missing)}")

    n_raw = len(df)
    df["asset_id"] = df["asset_id"].map(_text_id)
    df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    df["new_state"] = df["new_state"].apply(lambda v: _canonical(v, STATE_ALIASES))
    if "previous_state" in df.columns:
        df["previous_state"] = df["previous_state"].apply(lambda v: _canonical(v, STATE_ALIASES))
    else:
        df["previous_state"] = None

    # Types like STATE_CHANGE carry no direction of their own; use the new state.
    derived = df["new_state"].map(EVENT_TYPE_FOR_STATE)
    if "event_type" in df.columns:
        mapped = df["event_type"].apply(lambda v: _canonical(v, EVENT_TYPE_ALIASES))
        keep_shift = mapped == SHIFT
        df["event_type"] = derived.where(~keep_shift, SHIFT)
    else:
        df["event_type"] = derived
        warnings.append("Export has no event type column; derived from new state.")

    if "duration_seconds" not in df.columns:
        if "duration_ms" in df.columns:
            df["duration_seconds"] = pd.to_numeric(df["duration_ms"], errors="coerce") / 1000.0
            warnings.append("Durations were in milliseconds; converted to seconds.")
        elif "duration_minutes" in df.columns:
            df["duration_seconds"] = pd.to_numeric(df["duration_minutes"], errors="coerce") * 60.0
            warnings.append("Durations were in minutes; converted to seconds.")
        else:
            df["duration_seconds"] = None
    else:
        df["duration_seconds"] = pd.to_numeric(df["duration_seconds"], errors="coerce")

    negative = df["duration_seconds"].fillna(0) < 0
    if negative.any():
        df.loc[negative, "duration_seconds"] = None
        warnings.append(f"Cleared {int(negative.sum())} negative duration(s).")

    for col in ["stop_reason", "logger_id", "event_id"]:
        if col not in df.columns:
            df[col] = None

    bad = (
        df["timestamp"].isna()
        | df["new_state"].isna()
        | df["asset_id"].isna()
    )
    if bad.any():
        warnings.append(f"Dropped {int(bad.sum())} of {n_raw} row(s) with missing asset, state, or timestamp.")
    df = df[~bad]

    if len(df) == 0:
        raise ValueError("Logger export has no valid event rows.")

    df = df.sort_values("timestamp", kind="mergesort")
    events = []
    for rec in df.to_dict(orient="records"):
        events.append(Event(
            asset_id=rec["asset_id"],
            event_type=rec["event_type"],
            new_state=rec["new_state"],
            timestamp=rec["timestamp"],
            previous_state=_clean(rec["previous_state"]),
            duration_seconds=_clean(rec["duration_seconds"]),
            stop_reason=_clean(rec["stop_reason"]),
            logger_id=_text_id(rec["logger_id"]),
            event_id=_text_id(rec["event_id"]),
        ))
    return events, warnings


def load_logger_export(path):
    """Read a logger export file. Returns (events, warnings)."""
    df = _read_table(path)
    events, warnings = normalize_event_frame(df)
    logger.info("Read %d events from %s", len(events), path)
    for w in warnings:
        logger.warning("%s: %s", os.path.basename(path), w)
    return events, warnings


def ingest_into_ledger(ledger, path):
    """Append a logger export to *ledger*. Returns (n_appended, warnings).

    Rejected events (duplicates, out of order) are reported as warnings so
    one bad row doesn't block the rest of the file.
    """
    events, warnings = load_logger_export(path)
    appended = 0
    for event in events:
        try:
            ledger.append(event)
        except LedgerError as exc:
            warnings.append(str(exc))
            continue
        appended += 1
    rejected = len(events) - appended
    if rejected:
        logger.warning("Rejected %d of %d events from %s", rejected, len(events), path)
    return appended, warnings
