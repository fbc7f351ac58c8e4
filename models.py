"""Records shared by the ledger, aggregator, metrics, and archive layers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from shared import (
    ARCHIVE_TYPES, EVENT_TYPE_FOR_STATE, EVENT_TYPES, SHIFT, SHIFT_ACTIVE,
    SHIFT_COMPLETED, STATES, iso, round_pct, round_seconds, to_utc,
)


def _optional_str(value):
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass(frozen=True)
class Event:
    """One asset state change as recorded by a field logger.

    duration_seconds is how long the asset spent in previous_state before
    this event, when the logger reports it.
    """

    asset_id: str
    event_type: str
    new_state: str
    timestamp: datetime
    previous_state: Optional[str] = None
    duration_seconds: Optional[float] = None
    stop_reason: Optional[str] = None
    logger_id: Optional[str] = None
    event_id: Optional[str] = None

    def __post_init__(self):
        asset_id = _optional_str(self.asset_id)
        if asset_id is None:
            raise ValueError("Event is missing asset_id")
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event_type {self.event_type!r}")
        if self.new_state not in STATES:
            raise ValueError(f"Unknown new_state {self.new_state!r}")
        if self.previous_state is not None and self.previous_state not in STATES:
            raise ValueError(f"Unknown previous_state {self.previous_state!r}")
        if self.event_type != SHIFT and EVENT_TYPE_FOR_STATE[self.new_state] != self.event_type:
            raise ValueError(
                f"{self.event_type} event cannot move asset {asset_id} into {self.new_state}"
            )
        duration = self.duration_seconds
        if duration is not None:
            duration = float(duration)
            if duration < 0:
                raise ValueError(f"Negative duration on event for asset {asset_id}")
        object.__setattr__(self, "asset_id", asset_id)
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        object.__setattr__(self, "duration_seconds", duration)
        object.__setattr__(self, "stop_reason", _optional_str(self.stop_reason))
        object.__setattr__(self, "logger_id", _optional_str(self.logger_id))
        object.__setattr__(self, "event_id", _optional_str(self.event_id))

    @property
    def dedup_key(self):
        return (self.asset_id, self.timestamp, self.event_type,
                self.previous_state, self.new_state)

    def to_record(self) -> dict:
        return {
            "event_id": self.event_id,
            "asset_id": self.asset_id,
            "event_type": self.event_type,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "timestamp": iso(self.timestamp),
            "duration_seconds": self.duration_seconds,
            "stop_reason": self.stop_reason,
            "logger_id": self.logger_id,
        }

    @classmethod
    def from_record(cls, rec: dict) -> "Event":
        return cls(
            asset_id=rec["asset_id"],
            event_type=rec["event_type"],
            new_state=rec["new_state"],
            timestamp=rec["timestamp"],
            previous_state=rec.get("previous_state"),
            duration_seconds=rec.get("duration_seconds"),
            stop_reason=rec.get("stop_reason"),
            logger_id=rec.get("logger_id"),
            event_id=rec.get("event_id"),
        )


@dataclass
class Shift:
    id: int
    name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: str = SHIFT_ACTIVE

    def __post_init__(self):
        self.id = int(self.id)
        self.start_time = to_utc(self.start_time)
        if self.end_time is not None:
            self.end_time = to_utc(self.end_time)
            self.status = SHIFT_COMPLETED

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "start_time": iso(self.start_time),
            "end_time": iso(self.end_time),
            "status": self.status,
        }

    @classmethod
    def from_record(cls, rec: dict) -> "Shift":
        return cls(
            id=rec["id"],
            name=rec["name"],
            start_time=rec["start_time"],
            end_time=rec.get("end_time"),
            status=rec.get("status", SHIFT_ACTIVE),
        )


@dataclass(frozen=True)
class SequenceWarning:
    """An event whose previous_state disagreed with the tracked state."""

    asset_id: str
    timestamp: datetime
    expected_state: Optional[str]
    observed_state: Optional[str]
    message: str

    def to_record(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "timestamp": iso(self.timestamp),
            "expected_state": self.expected_state,
            "observed_state": self.observed_state,
            "message": self.message,
        }


@dataclass
class AssetAggregate:
    asset_id: str
    runtime_seconds: float = 0.0
    downtime_seconds: float = 0.0
    stop_count: int = 0
    micro_stop_count: int = 0
    availability_pct: float = 0.0
    last_state: Optional[str] = None
    event_count: int = 0
    warnings: list = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def to_record(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "runtime_seconds": round_seconds(self.runtime_seconds),
            "downtime_seconds": round_seconds(self.downtime_seconds),
            "stop_count": int(self.stop_count),
            "micro_stop_count": int(self.micro_stop_count),
            "availability_pct": round_pct(self.availability_pct),
            "last_state": self.last_state,
            "event_count": int(self.event_count),
            "warnings": [w.to_record() for w in self.warnings],
        }


@dataclass
class ShiftMetrics:
    availability_pct: float = 0.0
    performance_pct: float = 0.0
    quality_pct: float = 0.0
    oee_pct: float = 0.0
    total_runtime_seconds: float = 0.0
    total_downtime_seconds: float = 0.0
    total_stops: int = 0
    total_micro_stops: int = 0
    is_final: bool = True

    def to_record(self) -> dict:
        return {
            "availability_pct": round_pct(self.availability_pct),
            "performance_pct": round_pct(self.performance_pct),
            "quality_pct": round_pct(self.quality_pct),
            "oee_pct": round_pct(self.oee_pct),
            "total_runtime_seconds": round_seconds(self.total_runtime_seconds),
            "total_downtime_seconds": round_seconds(self.total_downtime_seconds),
            "total_stops": int(self.total_stops),
            "total_micro_stops": int(self.total_micro_stops),
            "is_final": bool(self.is_final),
        }


def canonical_json(data) -> str:
    """Serialize with sorted keys and no NaN so equal inputs give equal bytes."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"),
                      ensure_ascii=False, allow_nan=False)


@dataclass(frozen=True)
class Archive:
    """Point-in-time snapshot. archived_json is the stored form and never changes."""

    id: str
    title: str
    archive_type: str
    archived_json: str
    created_at: datetime

    def __post_init__(self):
        if self.archive_type not in ARCHIVE_TYPES:
            raise ValueError(f"Unknown archive_type {self.archive_type!r}")
        object.__setattr__(self, "created_at", to_utc(self.created_at))

    @property
    def archived_data(self) -> dict:
        # Parsed fresh each time so callers can't mutate the snapshot.
        return json.loads(self.archived_json)

    @property
    def shift_id(self):
        return self.archived_data.get("shift_id")

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "archive_type": self.archive_type,
            "archived_data": self.archived_json,
            "created_at": iso(self.created_at),
        }

    @classmethod
    def from_record(cls, rec: dict) -> "Archive":
        data = rec["archived_data"]
        if not isinstance(data, str):
            data = canonical_json(data)
        return cls(
            id=rec["id"],
            title=rec["title"],
            archive_type=rec["archive_type"],
            archived_json=data,
            created_at=rec["created_at"],
        )
