"""
Tests for shift_registry.py and shift_window.py.

Run: python -m pytest test_shift_registry.py -v
"""

import logging
from datetime import timedelta

import pytest

from models import Event, Shift
from shared import (
    RUNNING, SHIFT_ACTIVE, SHIFT_COMPLETED, STOP, STOPPED, NotFoundError, ShiftNotFoundError,
)
from shift_registry import ShiftRegistry
from shift_window import carried_over_states, resolve_window, select_events


class TestShiftLifecycle:
    def test_open_and_close(self, registry, t0):
        shift = registry.open_shift("Day", start_time=t0)
        assert shift.id == 1
        assert shift.status == SHIFT_ACTIVE
        assert shift.is_open
        assert registry.current_shift() is shift

        closed = registry.close_shift(shift.id, end_time=t0 + timedelta(hours=8))
        assert closed.status == SHIFT_COMPLETED
        assert closed.end_time == t0 + timedelta(hours=8)
        assert registry.current_shift() is None

    def test_close_twice_rejected(self, registry, t0):
        shift = registry.open_shift("Day", start_time=t0)
        registry.close_shift(shift.id, end_time=t0 + timedelta(hours=8))
        with pytest.raises(ValueError, match="already closed"):
            registry.close_shift(shift.id, end_time=t0 + timedelta(hours=9))

    def test_end_before_start_rejected(self, registry, t0):
        shift = registry.open_shift("Day", start_time=t0)
        with pytest.raises(ValueError):
            registry.close_shift(shift.id, end_time=t0 - timedelta(minutes=1))
        assert registry.get(shift.id).is_open

    def test_only_one_open_shift(self, registry, t0):
        registry.open_shift("Day", start_time=t0)
        with pytest.raises(ValueError, match="still open"):
            registry.open_shift("Swing", start_time=t0 + timedelta(hours=8))

    def test_ids_increment(self, registry, t0):
        first = registry.open_shift("Day", start_time=t0)
        registry.close_shift(first.id, end_time=t0 + timedelta(hours=8))
        second = registry.open_shift("Swing", start_time=t0 + timedelta(hours=8))
        assert second.id == 2
        assert [s.name for s in registry.list_shifts()] == ["Day", "Swing"]

    def test_add_existing_record(self, registry, t0):
        registry.add(Shift(id=41, name="Night", start_time=t0, end_time=t0 + timedelta(hours=8)))
        assert registry.get(41).status == SHIFT_COMPLETED
        with pytest.raises(ValueError):
            registry.add(Shift(id=41, name="Night", start_time=t0))
        assert registry.open_shift("Day", start_time=t0 + timedelta(hours=8)).id == 42


class TestShiftLookup:
    def test_unknown_shift(self, registry):
        with pytest.raises(ShiftNotFoundError):
            registry.get(99)

    def test_non_numeric_id_is_not_found(self, registry):
        with pytest.raises(ShiftNotFoundError):
            registry.get("abc")

    def test_not_found_is_lookup_error(self):
        assert issubclass(ShiftNotFoundError, NotFoundError)
        assert issubclass(ShiftNotFoundError, LookupError)

    def test_string_id_resolves(self, registry, t0):
        shift = registry.open_shift("Day", start_time=t0)
        assert registry.get(str(shift.id)) is shift

    def test_delete(self, registry, t0):
        shift = registry.open_shift("Day", start_time=t0)
        registry.delete(shift.id)
        with pytest.raises(ShiftNotFoundError):
            registry.get(shift.id)


class TestRegistryPersistence:
    def test_reload_from_json(self, tmp_path, t0):
        path = str(tmp_path / "shifts.json")
        reg = ShiftRegistry(path)
        s = reg.open_shift("Day", start_time=t0)
        reg.close_shift(s.id, end_time=t0 + timedelta(hours=8))
        reg.open_shift("Swing", start_time=t0 + timedelta(hours=8))

        reloaded = ShiftRegistry(path)

        assert [x.name for x in reloaded.list_shifts()] == ["Day", "Swing"]
        assert reloaded.get(1).end_time == t0 + timedelta(hours=8)
        assert reloaded.current_shift().name == "Swing"
        reloaded.close_shift(2, end_time=t0 + timedelta(hours=16))
        assert reloaded.open_shift("Night", start_time=t0 + timedelta(hours=16)).id == 3


class TestShiftWindow:
    def test_closed_shift_is_final(self, t0):
        shift = Shift(id=1, name="Day", start_time=t0, end_time=t0 + timedelta(hours=8))
        window = resolve_window(shift)
        assert window.start == t0
        assert window.end == t0 + timedelta(hours=8)
        assert window.is_final is True
        assert window.duration_seconds == 8 * 3600

    def test_open_shift_runs_to_now_and_is_provisional(self, t0):
        shift = Shift(id=1, name="Day", start_time=t0)
        now = t0 + timedelta(hours=2)
        window = resolve_window(shift, now=now)
        assert window.end == now
        assert window.is_final is False

    def test_inverted_window_is_clamped(self, t0, caplog):
        shift = Shift(id=7, name="Bad", start_time=t0, end_time=t0 - timedelta(hours=1))
        with caplog.at_level(logging.WARNING, logger="shift_window"):
            window = resolve_window(shift)
        assert window.end == window.start
        assert window.duration_seconds == 0
        assert "Shift 7" in caplog.text

    def test_select_events_and_carry_over(self, ledger, t0):
        before = Event(asset_id="A", event_type=STOP, previous_state=RUNNING,
                       new_state=STOPPED, timestamp=t0 - timedelta(minutes=5))
        inside = Event(asset_id="B", event_type=STOP, previous_state=RUNNING,
                       new_state=STOPPED, timestamp=t0 + timedelta(minutes=5))
        ledger.append(before)
        ledger.append(inside)
        window = resolve_window(Shift(id=1, name="Day", start_time=t0, end_time=t0 + timedelta(hours=1)))

        assert select_events(ledger, window) == [inside]
        assert carried_over_states(ledger, window) == {"A": STOPPED}

    def test_empty_window_selects_nothing(self, ledger, t0):
        window = resolve_window(Shift(id=1, name="Day", start_time=t0, end_time=t0))
        assert select_events(ledger, window) == []
