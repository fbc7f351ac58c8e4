"""
Per-Asset Aggregator
=====================
Folds an ordered event slice into runtime, downtime, stop and micro-stop
counts per asset for one window.

Time between consecutive observations goes to the state the asset was
in. The stretch from the window start to the first event goes to the
state carried over from before the window (or, if nothing is known, the
first event's previous_state). The stretch from the last event to the
window end goes to the last observed state. That final open interval is
what makes numbers for an in-progress shift meaningful.

A previous_state that disagrees with the tracked state is expected with
real loggers (missed packets, restarts). It is recorded as a
SequenceWarning on the aggregate and the walk resyncs to the event's
new_state. Nothing here raises for sequence problems.
"""

import logging

from metrics import availability_pct
from models import AssetAggregate, SequenceWarning
from shared import MICRO_STOP_SEPARATE, RUNNING, STOPPED, Settings, to_utc

logger = logging.getLogger(__name__)


class _AssetWalk:
    """Running totals for one asset across one window."""

    def __init__(self, asset_id, window_start, state, threshold, policy, state_since=None):
        self.agg = AssetAggregate(asset_id=asset_id)
        self.state = state
        self.cursor = window_start
        # A carried-over stop is measured from when it really began.
        self.state_since = state_since if state_since is not None else window_start
        self.threshold = threshold
        self.policy = policy

    def _attribute(self, until):
        elapsed = (until - self.cursor).total_seconds()
        if elapsed > 0:
            if self.state == RUNNING:
                self.agg.runtime_seconds += elapsed
            elif self.state == STOPPED:
                self.agg.downtime_seconds += elapsed
            # Unknown state: no coverage for this stretch.
            self.cursor = until

    def apply(self, event):
        self.agg.event_count += 1

        if self.state is None:
            self.state = event.previous_state
        elif event.previous_state is not None and event.previous_state != self.state:
            warning = SequenceWarning(
                asset_id=self.agg.asset_id,
                timestamp=event.timestamp,
                expected_state=self.state,
                observed_state=event.previous_state,
                message=(
                    f"{event.event_type} event reports previous state {event.previous_state} "
                    f"but asset was tracked as {self.state}; resynced to {event.new_state}"
                ),
            )
            self.agg.warnings.append(warning)
            logger.warning("Asset %s at %s: %s", self.agg.asset_id,
                           event.timestamp.isoformat(), warning.message)

        prior = self.state
        self._attribute(event.timestamp)

        if prior == STOPPED and event.new_state == RUNNING:
            self._close_stop(event)

        if event.new_state != prior:
            self.state_since = event.timestamp
        self.state = event.new_state

    def _close_stop(self, event):
        if event.duration_seconds is not None:
            stop_seconds = event.duration_seconds
        else:
            stop_seconds = (event.timestamp - self.state_since).total_seconds()

        is_micro = stop_seconds < self.threshold
        if is_micro:
            self.agg.micro_stop_count += 1
        if not (is_micro and self.policy == MICRO_STOP_SEPARATE):
            self.agg.stop_count += 1

    def finish(self, window_end):
        self._attribute(window_end)
        self.agg.last_state = self.state
        self.agg.availability_pct = availability_pct(
            self.agg.runtime_seconds, self.agg.downtime_seconds)
        return self.agg


def aggregate_events(events, start, end, prior_states=None, settings=None, prior_since=None):
    """Aggregate *events* over [start, end) into one AssetAggregate per asset.

    events: Event slice for the window, ordered by timestamp.
    prior_states: asset_id -> state known from before the window. Assets
        listed here with no events in the window are attributed to that
        state for the whole window.
    prior_since: asset_id -> when that prior state began. Without it a stop
        that spans the window start is measured from the window start when
        its restart carries no duration.

    Returns aggregates sorted by asset_id. An empty slice with no prior
    states returns an empty list, which is a valid zero-activity result.
    """
    settings = settings or Settings()
    prior_states = {str(k): v for k, v in (prior_states or {}).items()}
    prior_since = {str(k): to_utc(v) for k, v in (prior_since or {}).items()}
    start = to_utc(start)
    end = to_utc(end)
    if end < start:
        raise ValueError(f"Window end {end.isoformat()} is before start {start.isoformat()}")

    walks = {}

    def walk_for(asset_id):
        if asset_id not in walks:
            walks[asset_id] = _AssetWalk(
                asset_id=asset_id,
                window_start=start,
                state=prior_states.get(asset_id),
                threshold=settings.threshold_for(asset_id),
                policy=settings.micro_stop_policy,
                state_since=prior_since.get(asset_id) if asset_id in prior_states else None,
            )
        return walks[asset_id]

    for asset_id in prior_states:
        walk_for(asset_id)

    for event in sorted(events, key=lambda e: e.timestamp):
        if event.timestamp < start or event.timestamp >= end:
            continue
        walk_for(event.asset_id).apply(event)

    return [walks[a].finish(end) for a in sorted(walks)]
