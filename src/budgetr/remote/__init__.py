"""Remote backup providers for auto-sync."""

from .base import RemoteBackupStore
from .local_file import LocalFileBackupStore
from .memory import InMemoryBackupStore

__all__ = ["RemoteBackupStore", "InMemoryBackupStore", "LocalFileBackupStore"]
