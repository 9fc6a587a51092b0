"""Backup store that writes to a file, e.g. inside a synced folder."""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..errors import TransientSyncError
from .base import RemoteBackupStore

logger = logging.getLogger(__name__)


class LocalFileBackupStore(RemoteBackupStore):
    """Keeps the backup blob in a file; its mtime is the modified time."""

    name = "file"

    def __init__(self, path: Optional[Path] = None):
        self.path = path

    @property
    def is_configured(self) -> bool:
        return self.path is not None

    async def initialize(self, credential: Any = None) -> None:
        if credential is not None:
            self.path = Path(credential).expanduser()

    async def is_authenticated(self) -> bool:
        return self.path is not None and self.path.parent.exists()

    async def authenticate(self) -> bool:
        if self.path is None:
            return False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create backup directory {self.path.parent}: {e}")
            return False
        return True

    async def sign_out(self) -> None:
        self.path = None

    def _require_path(self) -> Path:
        if self.path is None:
            raise TransientSyncError("Backup file path is not configured.")
        return self.path

    async def download(self) -> Optional[str]:
        path = self._require_path()
        if not path.exists():
            return None
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise TransientSyncError(f"Failed to read backup {path}: {e}") from e

    def _write(self, path: Path, content: str) -> datetime:
        temp_file = path.with_suffix(".tmp")
        temp_file.write_text(content, encoding="utf-8")
        temp_file.replace(path)
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

    async def upload(self, content: str) -> Optional[datetime]:
        path = self._require_path()
        try:
            return await asyncio.to_thread(self._write, path, content)
        except OSError as e:
            raise TransientSyncError(f"Failed to write backup {path}: {e}") from e

    async def get_last_modified_time(self) -> Optional[datetime]:
        path = self._require_path()
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TransientSyncError(f"Failed to stat backup {path}: {e}") from e
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
