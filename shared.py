"""
Shared constants and utilities for the Asset Shift Monitor
===========================================================
Single source of truth for the event/state vocabulary, stop-reason
classification, default thresholds, and settings loading used across
event_ledger.py, aggregator.py, metrics.py, and shift_report.py.
"""

import json
import math
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import pandas as pd

# ---------------------------------------------------------------------------
# Event vocabulary
# ---------------------------------------------------------------------------
START = "START"
STOP = "STOP"
SHIFT = "SHIFT"
EVENT_TYPES = (START, STOP, SHIFT)

RUNNING = "RUNNING"
STOPPED = "STOPPED"
STATES = (RUNNING, STOPPED)

# Logger firmware and older exports use their own words for the same states.
STATE_ALIASES = {
    "RUNNING": RUNNING, "RUN": RUNNING, "UP": RUNNING, "ON": RUNNING,
    "STOPPED": STOPPED, "STOP": STOPPED, "DOWN": STOPPED, "IDLE": STOPPED,
    "OFF": STOPPED,
}

EVENT_TYPE_ALIASES = {
    "START": START, "STOP_END": START, "RUN_START": START,
    "STOP": STOP, "RUN_END": STOP, "STOP_START": STOP,
    "MICRO_STOP": STOP, "DOWNTIME": STOP,
    "SHIFT": SHIFT, "SHIFT_START": SHIFT, "SHIFT_END": SHIFT,
}

# Event type implied by the state an event moves into.
EVENT_TYPE_FOR_STATE = {RUNNING: START, STOPPED: STOP}

# ---------------------------------------------------------------------------
# Shifts and archives
# ---------------------------------------------------------------------------
SHIFT_ACTIVE = "active"
SHIFT_COMPLETED = "completed"

ARCHIVE_SHIFT_REPORT = "SHIFT_REPORT"
ARCHIVE_EVENTS = "EVENTS"
ARCHIVE_TYPES = (ARCHIVE_SHIFT_REPORT, ARCHIVE_EVENTS)

# ---------------------------------------------------------------------------
# Defaults (overridable through load_settings)
# ---------------------------------------------------------------------------
MICRO_STOP_THRESHOLD_SECONDS = 180.0
DEFAULT_PERFORMANCE = 1.0
DEFAULT_QUALITY = 1.0
DRIFT_TOLERANCE_SECONDS = 2.0

# "both": a micro-stop also counts as a stop. "separate": it only counts as a micro-stop.
MICRO_STOP_BOTH = "both"
MICRO_STOP_SEPARATE = "separate"
MICRO_STOP_POLICIES = (MICRO_STOP_BOTH, MICRO_STOP_SEPARATE)
MICRO_STOP_POLICY = MICRO_STOP_BOTH

CONFIG_ENV = "ASSET_MONITOR_CONFIG"


class NotFoundError(LookupError):
    """An id that the caller asked for does not exist."""


class ShiftNotFoundError(NotFoundError):
    pass


class AssetNotFoundError(NotFoundError):
    pass


class ArchiveNotFoundError(NotFoundError):
    pass


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@dataclass
class Settings:
    micro_stop_threshold_seconds: float = MICRO_STOP_THRESHOLD_SECONDS
    micro_stop_policy: str = MICRO_STOP_POLICY
    default_performance: float = DEFAULT_PERFORMANCE
    default_quality: float = DEFAULT_QUALITY
    drift_tolerance_seconds: float = DRIFT_TOLERANCE_SECONDS
    # Per-asset micro-stop thresholds, keyed by asset id.
    asset_thresholds: dict = field(default_factory=dict)

    def threshold_for(self, asset_id):
        return float(self.asset_thresholds.get(str(asset_id), self.micro_stop_threshold_seconds))

    def validate(self):
        if self.micro_stop_policy not in MICRO_STOP_POLICIES:
            raise ValueError(
                f"micro_stop_policy must be one of {', '.join(MICRO_STOP_POLICIES)}, "
                f"got {self.micro_stop_policy!r}"
            )
        if self.micro_stop_threshold_seconds < 0:
            raise ValueError("micro_stop_threshold_seconds must be >= 0")
        for name in ("default_performance", "default_quality"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be a fraction between 0 and 1, got {value}")
        for asset_id, threshold in self.asset_thresholds.items():
            if float(threshold) < 0:
                raise ValueError(f"Micro-stop threshold for asset {asset_id} must be >= 0")
        return self

    def to_record(self):
        return asdict(self)


_ENV_OVERRIDES = {
    "MICRO_STOP_THRESHOLD_SECONDS": ("micro_stop_threshold_seconds", float),
    "MICRO_STOP_POLICY": ("micro_stop_policy", str),
    "DEFAULT_PERFORMANCE": ("default_performance", float),
    "DEFAULT_QUALITY": ("default_quality", float),
    "DRIFT_TOLERANCE_SECONDS": ("drift_tolerance_seconds", float),
}


def load_settings(path=None, environ=None):
    """Build Settings from defaults, an optional JSON file, then environment variables.

    The file path comes from *path* or the ASSET_MONITOR_CONFIG variable.
    Unknown keys in the file are rejected so typos don't silently fall back
    to defaults.
    """
    environ = os.environ if environ is None else environ
    values = {}

    path = path or environ.get(CONFIG_ENV, "")
    if path:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        known = set(Settings.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings in {path}: {', '.join(unknown)}")
        values.update(data)

    for env_name, (attr, cast) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or str(raw).strip() == "":
            continue
        try:
            values[attr] = cast(str(raw).strip())
        except ValueError:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from None

    if "asset_thresholds" in values:
        values["asset_thresholds"] = {
            str(k): float(v) for k, v in values["asset_thresholds"].items()
        }
    return Settings(**values).validate()


# ---------------------------------------------------------------------------
# Stop reason classification
# ---------------------------------------------------------------------------
EQUIPMENT_KEYWORDS = [
    "motor", "conveyor", "bearing", "belt", "sensor", "jam", "gearbox",
    "pump", "hydraulic", "pneumatic", "drive", "spindle", "electrical",
    "breakdown", "fault", "alarm", "tool",
]

PROCESS_KEYWORDS = [
    "changeover", "setup", "startup", "shutdown", "cleaning", "clean",
    "adjustment", "calibration", "product change",
]

MATERIAL_KEYWORDS = [
    "material", "starved", "blocked", "waiting", "no parts", "supply",
    "upstream", "downstream",
]

SCHEDULED_KEYWORDS = [
    "not scheduled", "break", "lunch", "meeting", "training", "planned",
    "maintenance window",
]


def classify_stop_reason(reason):
    """Classify a stop reason entered by an operator into a loss category."""
    if reason is None or pd.isna(reason):
        return "Uncoded"
    r = str(reason).lower().strip()
    if not r or any(kw in r for kw in ["unassigned", "unknown"]):
        return "Uncoded"
    if any(kw in r for kw in SCHEDULED_KEYWORDS):
        return "Scheduled / Non-Production"
    if "micro" in r or "short stop" in r or "minor" in r:
        return "Micro Stops"
    if any(kw in r for kw in PROCESS_KEYWORDS):
        return "Process / Changeover"
    if any(kw in r for kw in MATERIAL_KEYWORDS):
        return "Material / Flow"
    if any(kw in r for kw in EQUIPMENT_KEYWORDS):
        return "Equipment / Mechanical"
    return "Other / Unclassified"


# ---------------------------------------------------------------------------
# Numbers and timestamps
# ---------------------------------------------------------------------------
def round_pct(value):
    """Round a percentage to one decimal (half-to-even); NaN/inf become 0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return round(value, 1)


def round_seconds(value):
    value = float(value or 0.0)
    if not math.isfinite(value):
        return 0.0
    return round(value, 3)


def utc_now():
    return datetime.now(timezone.utc)


def to_utc(value):
    """Coerce a datetime, pandas Timestamp, or ISO string to an aware UTC datetime.

    Naive values are taken to already be UTC, which is what the loggers send.
    """
    if value is None:
        raise ValueError("Timestamp is required")
    ts = pd.Timestamp(value)
    if pd.isna(ts):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    else:
        ts = ts.tz_convert("UTC")
    return ts.to_pydatetime()


def iso(value):
    return to_utc(value).isoformat() if value is not None else None
