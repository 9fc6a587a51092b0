"""Auto-sync engine keeping the local ledger and a remote backup convergent.

Two background tasks run while auto-sync is enabled:

* a debounce task that drains the ledger's change channel and pushes one
  snapshot after ``debounce_seconds`` without further changes;
* a poll task that asks the remote store for its modified time every
  ``poll_interval_seconds`` and pulls the backup when it moved on.

Conflicts resolve last-writer-wins on whole snapshots. The restoring guard
is a plain flag: everything runs on one event loop, so it only has to be
set before the import and released afterwards, whatever the outcome.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from .errors import AuthenticationRequired, InvalidImportError
from .ledger import Clock, TimeLedger, utc_now
from .models.sync import SyncState, SyncStatus
from .remote.base import RemoteBackupStore
from .store import KeyValueStorage

logger = logging.getLogger(__name__)

ENABLED_KEY = "budgetr_autosync_enabled"
LAST_SYNC_KEY = "budgetr_autosync_lastsync"

DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_REMOTE_TOLERANCE_SECONDS = 1.0

StatusListener = Callable[[SyncStatus], None]


class AutoSyncEngine:
    """Debounced push, periodic poll and guarded pull against one backup blob."""

    def __init__(
        self,
        ledger: TimeLedger,
        remote: RemoteBackupStore,
        storage: KeyValueStorage,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        remote_tolerance_seconds: float = DEFAULT_REMOTE_TOLERANCE_SECONDS,
        clock: Clock = utc_now,
    ):
        self.ledger = ledger
        self.remote = remote
        self.storage = storage
        self.debounce_seconds = debounce_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.remote_tolerance_seconds = remote_tolerance_seconds
        self.clock = clock

        self._enabled = False
        self._status = SyncStatus.IDLE
        self._last_sync_time: Optional[datetime] = None
        self._last_known_remote_modified_time: Optional[datetime] = None
        self._is_restoring = False
        self._is_pushing = False

        self._changes: asyncio.Queue[bool] = asyncio.Queue()
        self._debounce_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._status_listeners: list[StatusListener] = []

        self._unsubscribe = ledger.subscribe(self._on_ledger_changed)

    # ------------------------------------------------------------ state

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def is_restoring(self) -> bool:
        return self._is_restoring

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self._last_sync_time

    @property
    def last_known_remote_modified_time(self) -> Optional[datetime]:
        return self._last_known_remote_modified_time

    @property
    def pending_changes(self) -> int:
        return self._changes.qsize()

    @property
    def state(self) -> SyncState:
        return SyncState(
            enabled=self._enabled,
            last_sync_time=self._last_sync_time,
            last_known_remote_modified_time=self._last_known_remote_modified_time,
            status=self._status,
        )

    def on_status_changed(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns a function that removes it."""
        self._status_listeners.append(listener)
        return lambda: self._status_listeners.remove(listener) if listener in self._status_listeners else None

    def _set_status(self, status: SyncStatus, force: bool = False) -> None:
        # Operations that finish after disable() must not overwrite its Idle.
        if not self._enabled and not force:
            logger.debug(f"Auto-sync disabled, ignoring status {status.value}")
            return
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Sync status listener failed")

    @contextmanager
    def _restoring(self) -> Iterator[None]:
        self._is_restoring = True
        try:
            yield
        finally:
            self._is_restoring = False

    # ------------------------------------------------------------ change channel

    def _on_ledger_changed(self) -> None:
        if not self._enabled:
            return
        if self._is_restoring:
            logger.debug("Ignoring ledger change caused by restore")
            return
        self._changes.put_nowait(True)

    def _drain_changes(self) -> None:
        while not self._changes.empty():
            self._changes.get_nowait()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _debounce_loop(self) -> None:
        try:
            while True:
                await self._changes.get()
                while True:
                    try:
                        await asyncio.wait_for(self._changes.get(), timeout=self.debounce_seconds)
                    except asyncio.TimeoutError:
                        break
                # Shielded so disable() stops the timer but not a running push.
                await asyncio.shield(self._spawn(self.perform_sync()))
        except asyncio.CancelledError:
            logger.debug("Debounce loop cancelled")
            raise

    async def _poll_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.poll_interval_seconds)
                await asyncio.shield(self._spawn(self.check_for_remote_changes()))
        except asyncio.CancelledError:
            logger.debug("Poll loop cancelled")
            raise

    def _start_tasks(self) -> None:
        if self._debounce_task is None or self._debounce_task.done():
            self._debounce_task = asyncio.create_task(self._debounce_loop(), name="AutoSyncDebounce")
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="AutoSyncPoll")

    async def _stop_tasks(self) -> None:
        tasks = [t for t in (self._debounce_task, self._poll_task) if t is not None]
        self._debounce_task = None
        self._poll_task = None
        current = asyncio.current_task()
        for task in tasks:
            task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------ persistence

    async def _load_last_sync_time(self) -> None:
        try:
            value = await self.storage.get_item(LAST_SYNC_KEY)
        except OSError as e:
            logger.debug(f"Could not read last sync time: {e}")
            return
        if not value:
            return
        try:
            self._last_sync_time = datetime.fromisoformat(value)
        except ValueError:
            logger.debug(f"Ignoring unparseable last sync time: {value}")

    async def _record_sync(self, remote_modified_time: Optional[datetime]) -> None:
        self._last_sync_time = self.clock()
        if remote_modified_time is not None:
            self._last_known_remote_modified_time = remote_modified_time
        await self.storage.set_item(LAST_SYNC_KEY, self._last_sync_time.isoformat())

    # ------------------------------------------------------------ enable / disable

    async def enable(self) -> None:
        """Turn auto-sync on.

        The engine only counts as enabled once the flag is persisted, so a
        failed write leaves it off and ``enable()`` can be retried.

        Raises:
            AuthenticationRequired: If the remote store has no active session
            OSError: If the enabled flag cannot be persisted
        """
        if self._enabled:
            return
        if not await self.remote.is_authenticated():
            raise AuthenticationRequired(f"Please sign in to {self.remote.name} first.")

        await self.storage.set_item(ENABLED_KEY, "true")
        await self._load_last_sync_time()

        if self._last_sync_time is not None:
            self._last_known_remote_modified_time = self._last_sync_time
        else:
            # Never synced: treat whatever is already remote as seen.
            try:
                self._last_known_remote_modified_time = await self.remote.get_last_modified_time()
            except Exception as e:
                logger.warning(f"Auto-sync: could not read remote metadata: {e}")

        self._enabled = True
        self._drain_changes()
        self._start_tasks()
        self._set_status(SyncStatus.IDLE)
        logger.info(f"Auto-sync enabled ({self.remote.name})")

    async def disable(self) -> None:
        """Turn auto-sync off; operations already running are left to finish.

        Raises:
            OSError: If the disabled flag cannot be persisted (the engine is
                stopped regardless)
        """
        if not self._enabled:
            return
        self._enabled = False
        await self._stop_tasks()
        self._drain_changes()
        self._set_status(SyncStatus.IDLE, force=True)
        await self.storage.set_item(ENABLED_KEY, "false")
        logger.info("Auto-sync disabled")

    async def try_restore_state(self) -> bool:
        """Re-enable auto-sync at startup if it was on and the session survived."""
        try:
            enabled = await self.storage.get_item(ENABLED_KEY)
            if enabled != "true":
                return False
            if not await self.remote.is_authenticated():
                logger.info("Auto-sync was enabled but the remote session expired")
                return False
            await self.enable()
            return True
        except Exception as e:
            logger.warning(f"Failed to restore auto-sync state: {e}")
            return False

    # ------------------------------------------------------------ push

    async def _push(self) -> None:
        self._is_pushing = True
        try:
            content = self.ledger.export_data()
            modified = await self.remote.upload(content)
            if modified is None:
                modified = await self.remote.get_last_modified_time()
            await self._record_sync(modified)
        finally:
            self._is_pushing = False

    async def perform_sync(self) -> bool:
        """Upload the current snapshot (debounced push handler).

        Returns:
            True if the snapshot was uploaded
        """
        if not self._enabled:
            return False
        if self._is_restoring:
            logger.debug("Skipping push while a restore is running")
            return False

        self._set_status(SyncStatus.SYNCING)
        try:
            if not await self.remote.is_authenticated():
                logger.warning("Auto-sync: not signed in, disabling auto-sync")
                await self.disable()
                self._set_status(SyncStatus.FAILED, force=True)
                return False
            await self._push()
        except Exception as e:
            logger.warning(f"Auto-sync push failed: {e}")
            self._set_status(SyncStatus.FAILED)
            return False

        self._set_status(SyncStatus.SUCCESS)
        logger.info(f"Auto-sync: backup completed at {self._last_sync_time}")
        return True

    async def sync_now(self) -> None:
        """Upload immediately, whether or not auto-sync is enabled.

        Status transitions are reported even while auto-sync is off.

        Raises:
            AuthenticationRequired: If the remote store has no active session
            TransientSyncError: If the upload fails
        """
        if not await self.remote.is_authenticated():
            raise AuthenticationRequired(f"Please sign in to {self.remote.name} first.")
        self._set_status(SyncStatus.SYNCING, force=True)
        try:
            await self._push()
        except Exception:
            self._set_status(SyncStatus.FAILED, force=True)
            raise
        self._set_status(SyncStatus.SUCCESS, force=True)

    # ------------------------------------------------------------ pull

    async def check_for_remote_changes(self) -> bool:
        """Poll handler: restore when the remote moved past what we know.

        Returns:
            True if a restore ran
        """
        if not self._enabled or self._is_restoring or self._is_pushing:
            return False
        try:
            remote_modified = await self.remote.get_last_modified_time()
        except Exception as e:
            logger.warning(f"Auto-sync poll failed: {e}")
            self._set_status(SyncStatus.FAILED)
            return False

        if remote_modified is None:
            return False
        known = self._last_known_remote_modified_time
        if known is not None:
            drift = (remote_modified - known).total_seconds()
            if drift <= self.remote_tolerance_seconds:
                return False

        logger.info(f"Auto-sync: remote backup changed at {remote_modified}, restoring")
        return await self.restore_data(remote_modified)

    async def restore_data(self, remote_modified_time: Optional[datetime] = None) -> bool:
        """Download the remote snapshot and import it without echoing a push.

        Returns:
            True if the restore completed
        """
        with self._restoring():
            self._set_status(SyncStatus.SYNCING)
            try:
                content = await self.remote.download()
                if content and content.strip():
                    await self.ledger.import_data(content)
                else:
                    logger.info("Auto-sync: remote backup is empty, nothing to restore")
                await self._record_sync(remote_modified_time)
            except InvalidImportError as e:
                # Mark it seen so the same bad snapshot is not fetched every poll.
                if remote_modified_time is not None:
                    self._last_known_remote_modified_time = remote_modified_time
                logger.warning(f"Auto-sync: skipped unusable remote snapshot: {e}")
                self._set_status(SyncStatus.FAILED)
                return False
            except Exception as e:
                logger.warning(f"Auto-sync restore failed: {e}")
                self._set_status(SyncStatus.FAILED)
                return False

        self._set_status(SyncStatus.SUCCESS)
        return True

    async def restore_now(self) -> bool:
        """Pull the remote backup immediately, replacing local data.

        Like ``sync_now()``, reports its status even while auto-sync is off.

        Returns:
            False if there was no remote backup

        Raises:
            AuthenticationRequired: If the remote store has no active session
            InvalidImportError: If the backup cannot be imported
            TransientSyncError: If the download fails
        """
        if not await self.remote.is_authenticated():
            raise AuthenticationRequired(f"Please sign in to {self.remote.name} first.")
        with self._restoring():
            self._set_status(SyncStatus.SYNCING, force=True)
            try:
                remote_modified = await self.remote.get_last_modified_time()
                content = await self.remote.download()
                if not content or not content.strip():
                    self._set_status(SyncStatus.IDLE, force=True)
                    return False
                await self.ledger.import_data(content)
                await self._record_sync(remote_modified)
            except Exception:
                self._set_status(SyncStatus.FAILED, force=True)
                raise
        self._set_status(SyncStatus.SUCCESS, force=True)
        return True

    # ------------------------------------------------------------ lifecycle

    async def drain(self) -> None:
        """Wait for pushes and restores that are already running."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        self._unsubscribe()
        await self._stop_tasks()
        await self.drain()
