"""In-process backup store."""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..errors import TransientSyncError
from .base import RemoteBackupStore


class InMemoryBackupStore(RemoteBackupStore):
    """Holds the backup blob in memory.

    Useful for tests and for running the sync engine without a provider.
    ``fail_next`` makes the next remote call raise TransientSyncError.
    """

    name = "memory"

    def __init__(
        self,
        authenticated: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.authenticated = authenticated
        self.clock = clock
        self.content: Optional[str] = None
        self.modified_time: Optional[datetime] = None
        self.uploads: list[str] = []
        self.downloads = 0
        self.fail_next = False

    def _maybe_fail(self) -> None:
        if self.fail_next:
            self.fail_next = False
            raise TransientSyncError("Simulated remote failure")

    def put_external(self, content: str, modified_time: Optional[datetime] = None) -> None:
        """Simulate another device writing the backup."""
        self.content = content
        self.modified_time = modified_time or self.clock()

    async def initialize(self, credential: Any = None) -> None:
        return None

    async def is_authenticated(self) -> bool:
        return self.authenticated

    async def authenticate(self) -> bool:
        self.authenticated = True
        return True

    async def sign_out(self) -> None:
        self.authenticated = False

    async def download(self) -> Optional[str]:
        self._maybe_fail()
        self.downloads += 1
        return self.content

    async def upload(self, content: str) -> Optional[datetime]:
        self._maybe_fail()
        self.content = content
        self.modified_time = self.clock()
        self.uploads.append(content)
        return self.modified_time

    async def get_last_modified_time(self) -> Optional[datetime]:
        self._maybe_fail()
        return self.modified_time
