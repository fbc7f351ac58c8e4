from datetime import datetime, timezone

import pytest

from archive import ArchiveStore
from event_ledger import EventLedger
from shared import Settings
from shift_registry import ShiftRegistry


@pytest.fixture
def t0():
    return datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger():
    return EventLedger()


@pytest.fixture
def registry():
    return ShiftRegistry()


@pytest.fixture
def store():
    return ArchiveStore()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch):
    """Keep a developer's shell config from leaking into default settings."""
    for name in ["ASSET_MONITOR_CONFIG", "MICRO_STOP_THRESHOLD_SECONDS", "MICRO_STOP_POLICY",
                 "DEFAULT_PERFORMANCE", "DEFAULT_QUALITY", "DRIFT_TOLERANCE_SECONDS"]:
        monkeypatch.delenv(name, raising=False)
