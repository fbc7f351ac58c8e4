"""
Unit tests for shared settings, stop reason classification, and time helpers.

Run: python -m pytest test_core.py -v
"""

import json
from datetime import datetime, timezone

import pytest

from shared import (
    MICRO_STOP_SEPARATE, Settings, classify_stop_reason, iso, load_settings, to_utc,
)


# =====================================================================
# load_settings — defaults, JSON file, environment
# =====================================================================

class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings == Settings()
        assert settings.micro_stop_threshold_seconds == 180.0
        assert settings.micro_stop_policy == "both"

    def test_environment_overrides(self):
        settings = load_settings(environ={
            "MICRO_STOP_THRESHOLD_SECONDS": "300",
            "MICRO_STOP_POLICY": "separate",
            "DEFAULT_PERFORMANCE": "0.85",
        })
        assert settings.micro_stop_threshold_seconds == 300.0
        assert settings.micro_stop_policy == MICRO_STOP_SEPARATE
        assert settings.default_performance == 0.85

    def test_blank_environment_values_are_ignored(self):
        assert load_settings(environ={"DEFAULT_QUALITY": "  "}) == Settings()

    def test_invalid_environment_value(self):
        with pytest.raises(ValueError, match="DEFAULT_QUALITY"):
            load_settings(environ={"DEFAULT_QUALITY": "abc"})

    def test_invalid_policy(self):
        with pytest.raises(ValueError, match="micro_stop_policy"):
            load_settings(environ={"MICRO_STOP_POLICY": "neither"})

    def test_fraction_out_of_range(self):
        with pytest.raises(ValueError):
            load_settings(environ={"DEFAULT_QUALITY": "1.5"})

    def test_json_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({
            "micro_stop_threshold_seconds": 120,
            "asset_thresholds": {"7": 30},
        }))

        settings = load_settings(str(path), environ={})

        assert settings.threshold_for(7) == 30.0
        assert settings.threshold_for("Filler 1") == 120.0

    def test_environment_beats_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"micro_stop_threshold_seconds": 120}))

        settings = load_settings(environ={
            "ASSET_MONITOR_CONFIG": str(path),
            "MICRO_STOP_THRESHOLD_SECONDS": "60",
        })

        assert settings.micro_stop_threshold_seconds == 60.0

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"micro_stop_treshold": 10}))
        with pytest.raises(ValueError, match="micro_stop_treshold"):
            load_settings(str(path), environ={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.json"), environ={})

    def test_negative_asset_threshold(self):
        with pytest.raises(ValueError):
            Settings(asset_thresholds={"A": -1}).validate()

    def test_to_record(self):
        rec = Settings().to_record()
        assert rec["micro_stop_threshold_seconds"] == 180.0
        assert rec["asset_thresholds"] == {}


# =====================================================================
# classify_stop_reason — operator-entered reason classification
# =====================================================================

class TestClassifyStopReason:
    def test_equipment_keywords(self):
        assert classify_stop_reason("Conveyor jam") == "Equipment / Mechanical"
        assert classify_stop_reason("Motor fault") == "Equipment / Mechanical"

    def test_uncoded(self):
        assert classify_stop_reason(None) == "Uncoded"
        assert classify_stop_reason(float("nan")) == "Uncoded"
        assert classify_stop_reason("") == "Uncoded"
        assert classify_stop_reason("Unassigned") == "Uncoded"

    def test_scheduled(self):
        assert classify_stop_reason("Lunch break") == "Scheduled / Non-Production"
        assert classify_stop_reason("Planned maintenance") == "Scheduled / Non-Production"

    def test_micro_stops(self):
        assert classify_stop_reason("Short Stop") == "Micro Stops"
        assert classify_stop_reason("micro stop - filler") == "Micro Stops"

    def test_process(self):
        assert classify_stop_reason("Product changeover") == "Process / Changeover"
        assert classify_stop_reason("Cleaning") == "Process / Changeover"

    def test_material(self):
        assert classify_stop_reason("Starved for material") == "Material / Flow"
        assert classify_stop_reason("Blocked downstream") == "Material / Flow"

    def test_unrecognized(self):
        assert classify_stop_reason("Operator called away") == "Other / Unclassified"


# =====================================================================
# to_utc / iso — timestamp coercion
# =====================================================================

class TestTimestamps:
    def test_naive_is_utc(self):
        assert to_utc(datetime(2026, 3, 2, 6, 0)) == datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)

    def test_offset_is_converted(self):
        assert to_utc("2026-03-02T08:00:00+02:00") == datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)

    def test_invalid(self):
        with pytest.raises(ValueError):
            to_utc(None)
        with pytest.raises(ValueError):
            to_utc("not a timestamp")

    def test_iso(self):
        assert iso("2026-03-02 06:00:00") == "2026-03-02T06:00:00+00:00"
        assert iso(None) is None
