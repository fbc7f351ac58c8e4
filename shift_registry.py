"""Shift lookup and lifecycle: open, close (once), delete."""

import json
import logging
import os
import threading

from models import Shift
from shared import SHIFT_COMPLETED, ShiftNotFoundError, to_utc, utc_now

logger = logging.getLogger(__name__)


class ShiftRegistry:
    """In-memory shift table, optionally mirrored to a JSON file."""

    def __init__(self, path=None):
        self.path = path
        self._shifts = {}
        self._next_id = 1
        self._lock = threading.RLock()
        if path and os.path.exists(path) and os.path.getsize(path) > 0:
            self._load()

    def _load(self):
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for rec in data.get("shifts", []):
            shift = Shift.from_record(rec)
            self._shifts[shift.id] = shift
        self._next_id = max([data.get("next_id", 1)] + [s + 1 for s in self._shifts])

    def _save(self):
        if not self.path:
            return
        data = {
            "next_id": self._next_id,
            "shifts": [s.to_record() for s in self.list_shifts()],
        }
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)

    def add(self, shift):
        """Register an existing shift record (e.g. imported from another system)."""
        with self._lock:
            if shift.id in self._shifts:
                raise ValueError(f"Shift {shift.id} already exists")
            self._shifts[shift.id] = shift
            self._next_id = max(self._next_id, shift.id + 1)
            self._save()
            return shift

    def open_shift(self, name, start_time=None):
        with self._lock:
            active = self.current_shift()
            if active is not None:
                raise ValueError(
                    f"Shift {active.id} ({active.name}) is still open; close it before opening another"
                )
            shift = Shift(
                id=self._next_id,
                name=name,
                start_time=to_utc(start_time) if start_time is not None else utc_now(),
            )
            self._shifts[shift.id] = shift
            self._next_id += 1
            self._save()
        logger.info("Opened shift %d (%s) at %s", shift.id, shift.name, shift.start_time.isoformat())
        return shift

    def close_shift(self, shift_id, end_time=None):
        """Set end_time. A shift can only be closed once."""
        with self._lock:
            shift = self.get(shift_id)
            if shift.end_time is not None:
                raise ValueError(f"Shift {shift.id} was already closed at {shift.end_time.isoformat()}")
            end = to_utc(end_time) if end_time is not None else utc_now()
            if end < shift.start_time:
                raise ValueError(
                    f"Shift {shift.id} cannot end ({end.isoformat()}) before it starts "
                    f"({shift.start_time.isoformat()})"
                )
            shift.end_time = end
            shift.status = SHIFT_COMPLETED
            self._save()
        logger.info("Closed shift %d (%s) at %s", shift.id, shift.name, end.isoformat())
        return shift

    def get(self, shift_id):
        try:
            key = int(shift_id)
        except (TypeError, ValueError):
            raise ShiftNotFoundError(f"Shift {shift_id!r} not found") from None
        with self._lock:
            shift = self._shifts.get(key)
        if shift is None:
            raise ShiftNotFoundError(f"Shift {shift_id} not found")
        return shift

    def current_shift(self):
        """The open shift, or None."""
        with self._lock:
            open_shifts = [s for s in self._shifts.values() if s.is_open]
        if not open_shifts:
            return None
        return max(open_shifts, key=lambda s: s.start_time)

    def list_shifts(self):
        with self._lock:
            return sorted(self._shifts.values(), key=lambda s: (s.start_time, s.id))

    def delete(self, shift_id):
        """Remove a shift. Archives built from it stay valid."""
        with self._lock:
            shift = self.get(shift_id)
            del self._shifts[shift.id]
            self._save()
        logger.info("Deleted shift %d (%s)", shift.id, shift.name)
        return shift
