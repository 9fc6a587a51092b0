"""Pydantic models for Budgetr."""

from .ledger import (
    DEFAULT_TIMELINE_PERIOD,
    ExportSnapshot,
    LedgerSnapshot,
    Meter,
    MeterEvent,
    TimelinePoint,
)
from .sync import SyncState, SyncStatus

__all__ = [
    "DEFAULT_TIMELINE_PERIOD",
    "Meter",
    "MeterEvent",
    "TimelinePoint",
    "ExportSnapshot",
    "LedgerSnapshot",
    # Sync
    "SyncState",
    "SyncStatus",
]
