"""
Shift metrics: Availability, Performance, Quality, OEE
=======================================================
Availability comes from aggregated runtime/downtime. Performance and
quality are inputs: measured from production counts when the caller has
them, otherwise the configured defaults (100% unless set).

Every percentage is rounded to one decimal and any zero-division path
yields 0, never NaN, so archives always hold numbers.
"""

from models import ShiftMetrics
from shared import Settings, round_pct


def _availability_fraction(runtime_seconds, downtime_seconds):
    runtime = max(float(runtime_seconds or 0.0), 0.0)
    downtime = max(float(downtime_seconds or 0.0), 0.0)
    total = runtime + downtime
    if total <= 0:
        return 0.0
    return min(max(runtime / total, 0.0), 1.0)


def _clamp_fraction(value):
    value = float(value)
    if value != value:  # NaN
        return 0.0
    return min(max(value, 0.0), 1.0)


def availability_pct(runtime_seconds, downtime_seconds):
    """runtime / (runtime + downtime) * 100, clamped to [0, 100]; 0 when both are 0."""
    return round_pct(_availability_fraction(runtime_seconds, downtime_seconds) * 100.0)


def calc_oee_percent(availability, performance, quality):
    """availability/performance/quality in [0..1]"""
    return round_pct(availability * performance * quality * 100.0)


def performance_from_counts(actual_count, ideal_rate_per_hour, runtime_seconds):
    """Actual output over what the ideal rate would produce in the runtime."""
    ideal = float(ideal_rate_per_hour or 0.0) * float(runtime_seconds or 0.0) / 3600.0
    if ideal <= 0:
        return 0.0
    return _clamp_fraction(float(actual_count or 0.0) / ideal)


def quality_from_counts(good_count, total_count):
    total = float(total_count or 0.0)
    if total <= 0:
        return 0.0
    return _clamp_fraction(float(good_count or 0.0) / total)


def calc_shift_metrics(aggregates, performance=None, quality=None, is_final=True, settings=None):
    """Roll per-asset aggregates up to shift level.

    performance / quality are 0-1 fractions; None means "not measured" and
    falls back to the configured defaults.
    """
    settings = settings or Settings()
    runtime = sum(float(a.runtime_seconds) for a in aggregates)
    downtime = sum(float(a.downtime_seconds) for a in aggregates)

    avail = _availability_fraction(runtime, downtime)
    perf = _clamp_fraction(settings.default_performance if performance is None else performance)
    qual = _clamp_fraction(settings.default_quality if quality is None else quality)

    return ShiftMetrics(
        availability_pct=round_pct(avail * 100.0),
        performance_pct=round_pct(perf * 100.0),
        quality_pct=round_pct(qual * 100.0),
        oee_pct=calc_oee_percent(avail, perf, qual),
        total_runtime_seconds=runtime,
        total_downtime_seconds=downtime,
        total_stops=sum(int(a.stop_count) for a in aggregates),
        total_micro_stops=sum(int(a.micro_stop_count) for a in aggregates),
        is_final=bool(is_final),
    )
