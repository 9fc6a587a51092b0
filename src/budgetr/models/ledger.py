"""Pydantic models for meters, events and ledger snapshots."""

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_TIMELINE_PERIOD = timedelta(hours=24)

# .NET TimeSpan text form, e.g. "1.00:00:00" or "12:30:00"
_TIMESPAN_RE = re.compile(r"^(?:(?P<days>-?\d+)\.)?(?P<h>\d{1,2}):(?P<m>\d{2}):(?P<s>\d{2}(?:\.\d+)?)$")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _camelize_keys(data: Any) -> Any:
    """Accept PascalCase keys written by older clients ("StartTime" -> "startTime")."""
    if not isinstance(data, dict):
        return data
    return {
        (key[0].lower() + key[1:] if isinstance(key, str) and key[:1].isupper() else key): value
        for key, value in data.items()
    }


class WireModel(BaseModel):
    """Base model serialized with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return _camelize_keys(data)


class Meter(WireModel):
    """A named rate multiplier the user can activate."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = Field(description="Display name (1-40 characters)")
    factor: float = Field(description="Accrual multiplier; negative values spend time")
    display_order: int = Field(default=0)

    @staticmethod
    def format_factor_name(factor: float) -> str:
        """Format a factor as a meter label, e.g. ``+1x`` or ``-1.5x``."""
        sign = "+" if factor >= 0 else ""
        text = f"{factor:g}"
        return f"{sign}{text}x"


class MeterEvent(WireModel):
    """One run of a meter.

    ``factor`` and ``meter_name`` are copied from the meter when it starts,
    so later edits to the registry do not rewrite history. An event without
    ``end_time`` is the active one.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    start_time: datetime
    end_time: datetime | None = None
    factor: float
    meter_name: str = ""

    @field_validator("start_time", "end_time")
    @classmethod
    def _ensure_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value) if value is not None else None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def duration(self, now: datetime) -> timedelta:
        end = self.end_time if self.end_time is not None else now
        return end - self.start_time

    def contribution_hours(self, now: datetime) -> float:
        return self.duration(now).total_seconds() / 3600.0 * self.factor


class TimelinePoint(BaseModel):
    """A balance sample used to plot the timeline."""

    timestamp: datetime
    balance_hours: float

    model_config = {"frozen": True}


class ExportSnapshot(WireModel):
    """Durable backup format shared by export/import and remote sync."""

    exported_at: datetime
    meters: list[Meter] = Field(default_factory=list)
    events: list[MeterEvent] = Field(default_factory=list)

    @field_validator("exported_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("meters", "events", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class LedgerSnapshot(WireModel):
    """Locally persisted ledger: meters, events and the timeline period."""

    meters: list[Meter] = Field(default_factory=list)
    events: list[MeterEvent] = Field(default_factory=list)
    timeline_period: timedelta = Field(default=timedelta(0))

    @field_validator("meters", "events", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("timeline_period", mode="before")
    @classmethod
    def _parse_timespan(cls, value: Any) -> Any:
        if value is None:
            return timedelta(0)
        if isinstance(value, str):
            match = _TIMESPAN_RE.match(value.strip())
            if match:
                days = int(match.group("days") or 0)
                return timedelta(
                    days=days,
                    hours=int(match.group("h")),
                    minutes=int(match.group("m")),
                    seconds=float(match.group("s")),
                )
        return value
