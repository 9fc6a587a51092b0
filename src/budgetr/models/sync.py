"""Models describing auto-sync state."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SyncStatus(str, Enum):
    """Status of the most recent auto-sync operation."""

    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    FAILED = "failed"


class SyncState(BaseModel):
    """Point-in-time view of the auto-sync engine."""

    enabled: bool = False
    last_sync_time: datetime | None = Field(default=None, description="Last successful push or pull")
    last_known_remote_modified_time: datetime | None = Field(
        default=None, description="Remote modified time already accounted for (session only)"
    )
    status: SyncStatus = SyncStatus.IDLE
