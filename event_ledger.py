"""
Event Ledger for the Asset Shift Monitor
=========================================
Append-only record of asset state changes. Everything downstream
(windows, aggregates, archives) reads from here and never writes back.

Persistence follows the same shape as the run history log: one JSON
object per line in an append-only file. The ledger can also run purely
in memory (path=None), which is what the tests and one-off scripts use.

Last-known state is always derived from the most recent event per asset;
there is no stored "current_state".
"""

import json
import logging
import os
import threading
from collections import defaultdict

import pandas as pd

from models import Event
from shared import DRIFT_TOLERANCE_SECONDS, to_utc

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [
    "event_id", "asset_id", "event_type", "previous_state", "new_state",
    "timestamp", "duration_seconds", "stop_reason", "logger_id",
]


class LedgerError(ValueError):
    """Base class for events the ledger refuses to record."""


class DuplicateEventError(LedgerError):
    pass


class OutOfOrderEventError(LedgerError):
    pass


def events_frame(events):
    """DataFrame view of events with a UTC datetime timestamp column."""
    df = pd.DataFrame([e.to_record() for e in events], columns=EVENT_COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df["duration_seconds"] = pd.to_numeric(df["duration_seconds"], errors="coerce")
    return df


class EventLedger:
    def __init__(self, path=None, drift_tolerance_seconds=DRIFT_TOLERANCE_SECONDS):
        self.path = path
        self.drift_tolerance_seconds = float(drift_tolerance_seconds)
        self._by_asset = defaultdict(list)
        self._keys = set()
        self._event_ids = set()
        self._lock = threading.RLock()

    @classmethod
    def load(cls, path, drift_tolerance_seconds=DRIFT_TOLERANCE_SECONDS):
        """Open a JSONL ledger, replaying existing lines. Missing file = empty ledger."""
        ledger = cls(path=path, drift_tolerance_seconds=drift_tolerance_seconds)
        if not os.path.exists(path) or os.path.getsize(path) == 0:
            return ledger

        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = Event.from_record(json.loads(line))
                except (ValueError, KeyError) as exc:
                    raise ValueError(f"{path}:{lineno}: unreadable event ({exc})") from exc
                ledger.append(event, persist=False)
        logger.info("Loaded %d events for %d assets from %s",
                    len(ledger), len(ledger.assets()), path)
        return ledger

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def append(self, event, persist=True):
        """Record *event*.

        Raises DuplicateEventError if the same event (or event_id) was
        already recorded, OutOfOrderEventError if it is older than the
        asset's latest event. Duration drift is only logged.
        """
        with self._lock:
            if event.dedup_key in self._keys or (
                    event.event_id is not None and event.event_id in self._event_ids):
                raise DuplicateEventError(
                    f"Duplicate event for asset {event.asset_id} at {event.timestamp.isoformat()}"
                )

            history = self._by_asset[event.asset_id]
            if history:
                last = history[-1]
                if event.timestamp < last.timestamp:
                    raise OutOfOrderEventError(
                        f"Event for asset {event.asset_id} at {event.timestamp.isoformat()} "
                        f"is older than latest recorded event at {last.timestamp.isoformat()}"
                    )
                self._check_drift(last, event)

            if persist and self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(event.to_record()) + "\n")

            history.append(event)
            self._keys.add(event.dedup_key)
            if event.event_id is not None:
                self._event_ids.add(event.event_id)

    def _check_drift(self, last, event):
        if event.duration_seconds is None:
            return
        elapsed = (event.timestamp - last.timestamp).total_seconds()
        drift = elapsed - event.duration_seconds
        if abs(drift) > self.drift_tolerance_seconds:
            logger.warning(
                "Asset %s: event at %s reports %.1fs in %s but %.1fs elapsed since "
                "previous event (drift %+.1fs)",
                event.asset_id, event.timestamp.isoformat(), event.duration_seconds,
                event.previous_state or "previous state", elapsed, drift,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def query(self, asset_id=None, start=None, end=None):
        """Events with start <= timestamp < end, ordered by timestamp.

        Either bound may be None. Ties keep ledger order within an asset.
        """
        start = to_utc(start) if start is not None else None
        end = to_utc(end) if end is not None else None

        with self._lock:
            if asset_id is not None:
                sources = [list(self._by_asset.get(str(asset_id), []))]
            else:
                sources = [list(self._by_asset[a]) for a in sorted(self._by_asset)]

        out = []
        for events in sources:
            for e in events:
                if start is not None and e.timestamp < start:
                    continue
                if end is not None and e.timestamp >= end:
                    break
                out.append(e)
        out.sort(key=lambda e: e.timestamp)
        return out

    def last_event_before(self, asset_id, ts):
        ts = to_utc(ts)
        with self._lock:
            history = list(self._by_asset.get(str(asset_id), []))
        for e in reversed(history):
            if e.timestamp < ts:
                return e
        return None

    def last_known_states(self, ts, asset_id=None):
        """Map asset_id -> state the asset was in just before *ts*."""
        asset_ids = [str(asset_id)] if asset_id is not None else self.assets()
        states = {}
        for aid in asset_ids:
            last = self.last_event_before(aid, ts)
            if last is not None:
                states[aid] = last.new_state
        return states

    def state_entered_at(self, asset_id, ts):
        """When the asset entered the state it was in just before *ts*.

        Consecutive events into the same state (e.g. SHIFT markers) don't
        restart the clock. None if nothing is known before *ts*.
        """
        ts = to_utc(ts)
        with self._lock:
            history = list(self._by_asset.get(str(asset_id), []))
        state, entered = None, None
        for e in reversed(history):
            if e.timestamp >= ts:
                continue
            if state is None:
                state = e.new_state
            elif e.new_state != state:
                break
            entered = e.timestamp
        return entered

    def state_entry_times(self, ts, asset_id=None):
        """Map asset_id -> when its state as of *ts* began."""
        asset_ids = [str(asset_id)] if asset_id is not None else self.assets()
        times = {}
        for aid in asset_ids:
            entered = self.state_entered_at(aid, ts)
            if entered is not None:
                times[aid] = entered
        return times

    def assets(self):
        with self._lock:
            return sorted(a for a, events in self._by_asset.items() if events)

    def has_asset(self, asset_id):
        return str(asset_id) in self.assets()

    def to_frame(self, asset_id=None, start=None, end=None):
        return events_frame(self.query(asset_id=asset_id, start=start, end=end))

    def __len__(self):
        with self._lock:
            return sum(len(events) for events in self._by_asset.values())
