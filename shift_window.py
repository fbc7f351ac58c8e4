"""Resolve a shift into the time window its events are aggregated over."""

import logging
from dataclasses import dataclass
from datetime import datetime

from shared import to_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShiftWindow:
    start: datetime
    end: datetime
    is_final: bool

    @property
    def duration_seconds(self):
        return max(0.0, (self.end - self.start).total_seconds())


def resolve_window(shift, now=None):
    """Window [start_time, end_time) for a shift.

    An open shift (end_time is None) runs until *now*, and anything
    computed over it is provisional (is_final=False).
    """
    start = to_utc(shift.start_time)
    if shift.end_time is None:
        end = to_utc(now) if now is not None else utc_now()
        is_final = False
    else:
        end = to_utc(shift.end_time)
        is_final = True

    if end < start:
        logger.warning(
            "Shift %s window ends (%s) before it starts (%s); using an empty window",
            getattr(shift, "id", "?"), end.isoformat(), start.isoformat(),
        )
        end = start
    return ShiftWindow(start=start, end=end, is_final=is_final)


def select_events(ledger, window, asset_id=None):
    """Events with window.start <= timestamp < window.end. Empty is fine."""
    return ledger.query(asset_id=asset_id, start=window.start, end=window.end)


def carried_over_states(ledger, window, asset_id=None):
    """State each asset was in when the window opened, from events before it."""
    return ledger.last_known_states(window.start, asset_id=asset_id)


def carried_over_since(ledger, window, asset_id=None):
    """When each carried-over state began, so stops spanning the window start keep their full length."""
    return ledger.state_entry_times(window.start, asset_id=asset_id)
