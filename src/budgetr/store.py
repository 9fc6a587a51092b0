"""Local key/value persistence and the ledger snapshot store."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from .errors import CorruptSnapshotError
from .models.ledger import LedgerSnapshot

logger = logging.getLogger(__name__)

LEDGER_KEY = "budgetr_account"


class KeyValueStorage(Protocol):
    """Async string key/value storage used for all local state."""

    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class InMemoryStorage:
    """Dict-backed storage for tests and throwaway sessions."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self.items: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    async def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class JsonFileStorage:
    """Storage backed by a single JSON object file.

    Every write rewrites the whole file atomically (temp file + replace).
    A missing or unreadable file reads as empty.
    """

    def __init__(self, path: Path):
        self.path = path

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read storage file {self.path}: {e}, using empty state")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Storage file {self.path} does not hold an object, using empty state")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write_all(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            temp_file.replace(self.path)
            logger.debug(f"Saved storage to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save storage to {self.path}: {e}")
            temp_file.unlink(missing_ok=True)
            raise

    def _set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def _remove(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data)

    async def get_item(self, key: str) -> Optional[str]:
        data = await asyncio.to_thread(self._read_all)
        return data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def remove_item(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)


class LedgerStore:
    """Reads and writes the ledger as one serialized snapshot."""

    def __init__(self, storage: KeyValueStorage, key: str = LEDGER_KEY):
        self.storage = storage
        self.key = key

    async def load(self) -> Optional[LedgerSnapshot]:
        """Load the persisted snapshot.

        Returns:
            The snapshot, or None if nothing was persisted

        Raises:
            CorruptSnapshotError: If the stored value cannot be parsed
        """
        raw = await self.storage.get_item(self.key)
        if not raw:
            return None
        try:
            return LedgerSnapshot.model_validate_json(raw)
        except PydanticValidationError as e:
            raise CorruptSnapshotError(f"Stored ledger snapshot is unreadable: {e}") from e

    async def save(self, snapshot: LedgerSnapshot) -> None:
        payload = snapshot.model_dump_json(by_alias=True)
        await self.storage.set_item(self.key, payload)

    async def clear(self) -> None:
        await self.storage.remove_item(self.key)
