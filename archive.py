"""
Archive Builder + Archive Store
================================
An archive is the durable, point-in-time record of a shift:
  1. SHIFT_REPORT — resolved window, per-asset aggregates, shift metrics
  2. EVENTS       — the raw event slice with a small summary

Building is pure: the same inputs give byte-identical archived data
(sorted keys, fixed rounding). Each call still produces a new archive
record with its own id, because "regenerate report" is a normal thing to
do. The store is an append-only JSONL log, like the run history, and
never rewrites a saved archive.
"""

import json
import logging
import os
import threading
import uuid
from collections import Counter

from models import Archive, canonical_json
from shared import (
    ARCHIVE_EVENTS, ARCHIVE_SHIFT_REPORT, ArchiveNotFoundError, iso, utc_now,
)

logger = logging.getLogger(__name__)


# =========================================================================
# Builders
# =========================================================================

def build_archive(shift, aggregates, metrics, metadata=None, title=None,
                  extra=None, archive_id=None, created_at=None):
    """Snapshot a shift report into a SHIFT_REPORT archive.

    extra: additional report sections (e.g. downtime_pareto) stored next
    to the metrics. Must be JSON-serializable without NaN.
    """
    data = {
        "shift_id": shift.id,
        "shift": shift.to_record(),
        "per_asset_metrics": [a.to_record() for a in sorted(aggregates, key=lambda a: a.asset_id)],
        "shift_metrics": metrics.to_record(),
        "generation_metadata": dict(metadata or {}),
    }
    for key, value in (extra or {}).items():
        if key in data:
            raise ValueError(f"Extra section {key!r} would overwrite a core archive field")
        data[key] = value

    return Archive(
        id=archive_id or uuid.uuid4().hex,
        title=title or f"Shift Report - {shift.name}",
        archive_type=ARCHIVE_SHIFT_REPORT,
        archived_json=canonical_json(data),
        created_at=created_at or utc_now(),
    )


def _duration_range_minutes(events):
    minutes = [round(e.duration_seconds / 60.0) for e in events if e.duration_seconds]
    if not minutes:
        return None
    return {
        "min": min(minutes),
        "max": max(minutes),
        "avg": round(sum(minutes) / len(minutes)),
    }


def build_event_archive(shift, events, title=None, archive_id=None, created_at=None):
    """Snapshot a shift's raw events into an EVENTS archive."""
    events = sorted(events, key=lambda e: (e.timestamp, e.asset_id))
    type_counts = Counter(e.event_type for e in events)
    data = {
        "shift_id": shift.id,
        "shift_name": shift.name,
        "start_time": iso(shift.start_time),
        "end_time": iso(shift.end_time),
        "event_count": len(events),
        "events": [e.to_record() for e in events],
        "summary": {
            "total_events": len(events),
            "event_types": dict(sorted(type_counts.items())),
            "assets_involved": sorted({e.asset_id for e in events}),
            "duration_range": _duration_range_minutes(events),
        },
    }
    return Archive(
        id=archive_id or uuid.uuid4().hex,
        title=title or f"Event Archive - {shift.name}",
        archive_type=ARCHIVE_EVENTS,
        archived_json=canonical_json(data),
        created_at=created_at or utc_now(),
    )


# =========================================================================
# Store
# =========================================================================

class ArchiveStore:
    """Persistence sink for archives. path=None keeps them in memory."""

    def __init__(self, path=None):
        self.path = path
        self._archives = {}
        self._lock = threading.RLock()
        if path and os.path.exists(path) and os.path.getsize(path) > 0:
            self._load()

    def _load(self):
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    archive = Archive.from_record(json.loads(line))
                    self._archives[archive.id] = archive

    def save(self, archive):
        """Persist *archive* once. Returns its id."""
        with self._lock:
            if archive.id in self._archives:
                raise ValueError(f"Archive {archive.id} is already saved; build a new one instead")
            if self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(archive.to_record()) + "\n")
            self._archives[archive.id] = archive
        logger.info("Saved %s archive %s (%s)", archive.archive_type, archive.id, archive.title)
        return archive.id

    def load(self, archive_id):
        with self._lock:
            archive = self._archives.get(archive_id)
        if archive is None:
            raise ArchiveNotFoundError(f"Archive {archive_id} not found")
        return archive

    def list_archives(self, archive_type=None, shift_id=None):
        """Archives ordered by creation time, optionally filtered."""
        with self._lock:
            archives = list(self._archives.values())
        if archive_type is not None:
            archives = [a for a in archives if a.archive_type == archive_type]
        if shift_id is not None:
            archives = [a for a in archives if a.shift_id == int(shift_id)]
        return sorted(archives, key=lambda a: a.created_at)

    def __len__(self):
        with self._lock:
            return len(self._archives)
