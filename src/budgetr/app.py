"""Assembles the ledger, local storage, remote store and sync engine."""

import logging
from dataclasses import dataclass

from .config import BudgetrConfig
from .ledger import TimeLedger
from .meters import TomlMeterConfiguration
from .paths import DataPaths
from .remote.base import RemoteBackupStore
from .remote.local_file import LocalFileBackupStore
from .store import JsonFileStorage, LedgerStore
from .sync import AutoSyncEngine

logger = logging.getLogger(__name__)


def build_remote_store(config: BudgetrConfig, paths: DataPaths) -> RemoteBackupStore:
    """Create the configured remote backup provider."""
    provider = config.sync.provider
    if provider == "google_drive":
        from .remote.google_drive import GoogleDriveBackupStore

        return GoogleDriveBackupStore(
            credentials_path=config.google.credentials_path or paths.google_credentials,
            token_path=config.google.token_path or paths.google_token,
            backup_filename=config.google.backup_filename,
        )
    if provider == "supabase":
        from .remote.supabase import SupabaseBackupStore

        return SupabaseBackupStore(
            url=config.supabase.url,
            anon_key=config.supabase.anon_key,
            email=config.supabase.email,
            session_path=paths.supabase_session,
        )
    return LocalFileBackupStore(config.sync.backup_file or paths.backup_file)


@dataclass
class BudgetrApp:
    config: BudgetrConfig
    paths: DataPaths
    storage: JsonFileStorage
    ledger: TimeLedger
    remote: RemoteBackupStore
    sync: AutoSyncEngine

    async def reload_if_changed(self) -> bool:
        """Reload the ledger when another process rewrote the stored snapshot.

        The reload goes through the ledger's normal change notification, so
        an enabled auto-sync engine pushes the new state.

        Returns:
            True if the ledger was reloaded
        """
        if self.sync.is_restoring:
            return False
        stored = await self.storage.get_item(self.ledger.store.key)
        if not stored or stored == self.ledger.snapshot().model_dump_json(by_alias=True):
            return False
        logger.info("Ledger changed on disk, reloading")
        await self.ledger.load()
        return True


async def open_app(config: BudgetrConfig, remote: RemoteBackupStore | None = None) -> BudgetrApp:
    """Load the ledger from the data directory and wire up auto-sync.

    Auto-sync is not restored here; callers that keep running call
    ``app.sync.try_restore_state()``.
    """
    paths = DataPaths.from_config(config)
    storage = JsonFileStorage(paths.state_file)
    ledger = TimeLedger(LedgerStore(storage), TomlMeterConfiguration(paths.meters_file))
    await ledger.load()

    remote = remote or build_remote_store(config, paths)
    await remote.initialize()
    engine = AutoSyncEngine(
        ledger,
        remote,
        storage,
        debounce_seconds=config.sync.debounce_ms / 1000.0,
        poll_interval_seconds=config.sync.poll_interval_seconds,
        remote_tolerance_seconds=config.sync.remote_tolerance_seconds,
    )
    logger.debug(f"Opened Budgetr data at {paths.root} with {remote.name} backups")
    return BudgetrApp(config=config, paths=paths, storage=storage, ledger=ledger, remote=remote, sync=engine)
