"""Contract for remote backup providers."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional


class RemoteBackupStore(ABC):
    """A single named backup blob held by a remote provider.

    The auto-sync engine treats every implementation interchangeably.
    Network and provider failures are raised as TransientSyncError.
    """

    name: str = "remote"

    @property
    def is_configured(self) -> bool:
        """Whether the provider has the settings it needs to connect."""
        return True

    async def initialize(self, credential: Any = None) -> None:
        """Prepare the provider with a credential (client id, key, path)."""

    @abstractmethod
    async def is_authenticated(self) -> bool: ...

    @abstractmethod
    async def authenticate(self) -> bool:
        """Start or refresh a session; returns True on success."""

    @abstractmethod
    async def sign_out(self) -> None: ...

    @abstractmethod
    async def download(self) -> Optional[str]:
        """Return the backup content, or None if no backup exists."""

    @abstractmethod
    async def upload(self, content: str) -> Optional[datetime]:
        """Replace the backup; returns the new modified time when known."""

    @abstractmethod
    async def get_last_modified_time(self) -> Optional[datetime]: ...
