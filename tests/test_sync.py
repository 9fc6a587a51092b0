"""Tests for the auto-sync engine."""

import asyncio
import json
import uuid
from datetime import timedelta

import pytest

from budgetr.errors import AuthenticationRequired, CorruptSnapshotError, TransientSyncError
from budgetr.ledger import TimeLedger
from budgetr.meters import DefaultMeterConfiguration
from budgetr.models.sync import SyncStatus
from budgetr.remote.memory import InMemoryBackupStore
from budgetr.store import InMemoryStorage, LedgerStore
from budgetr.sync import ENABLED_KEY, LAST_SYNC_KEY, AutoSyncEngine

SETTLE = 0.3


class GatedBackupStore(InMemoryBackupStore):
    """Backup store whose uploads block until the gate opens."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def upload(self, content):
        self.started.set()
        await self.gate.wait()
        return await super().upload(content)


def remote_blob(name="Remote", factor=3.0):
    return json.dumps({
        "exportedAt": "2026-01-19T08:00:00Z",
        "meters": [{"id": str(uuid.uuid4()), "name": name, "factor": factor, "displayOrder": 0}],
        "events": [],
    })


async def make_engine(clock, remote=None, storage=None, **kwargs):
    storage = storage if storage is not None else InMemoryStorage()
    ledger = TimeLedger(LedgerStore(storage), DefaultMeterConfiguration(), clock=clock)
    await ledger.load()
    remote = remote if remote is not None else InMemoryBackupStore(clock=clock)
    kwargs.setdefault("debounce_seconds", 0.05)
    kwargs.setdefault("poll_interval_seconds", 3600)
    engine = AutoSyncEngine(ledger, remote, storage, clock=clock, **kwargs)
    return ledger, remote, engine


def test_enable_requires_authentication(clock):
    """Test that enabling without a session fails and persists nothing."""

    async def scenario():
        storage = InMemoryStorage()
        _, _, engine = await make_engine(clock, InMemoryBackupStore(authenticated=False), storage)

        with pytest.raises(AuthenticationRequired):
            await engine.enable()

        assert not engine.is_enabled
        assert ENABLED_KEY not in storage.items
        await engine.close()

    asyncio.run(scenario())


def test_changes_are_ignored_while_disabled(clock):
    """Test that edits made before enable are not queued."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)

        await ledger.activate_meter(ledger.meters[0].id)

        assert engine.pending_changes == 0
        await engine.close()

    asyncio.run(scenario())


def test_burst_of_edits_produces_one_push(clock):
    """Test that rapid edits are coalesced into a single upload of the final state."""

    async def scenario():
        storage = InMemoryStorage()
        ledger, remote, engine = await make_engine(clock, storage=storage)
        await engine.enable()

        plus, minus = ledger.meters
        await ledger.activate_meter(plus.id)
        await ledger.activate_meter(minus.id)
        await ledger.deactivate_meter()
        await asyncio.sleep(SETTLE)

        assert len(remote.uploads) == 1
        assert remote.uploads[0] == ledger.export_data()
        assert engine.status == SyncStatus.SUCCESS
        assert engine.last_sync_time == clock.now
        assert engine.last_known_remote_modified_time == remote.modified_time
        assert storage.items[LAST_SYNC_KEY] == clock.now.isoformat()
        assert storage.items[ENABLED_KEY] == "true"
        await engine.close()

    asyncio.run(scenario())


def test_remote_drift_within_tolerance_is_ignored(clock):
    """Test that the poll only restores when the remote moved past the tolerance."""

    async def scenario():
        remote = InMemoryBackupStore(clock=clock)
        remote.put_external(remote_blob("Old"), clock.now)
        ledger, _, engine = await make_engine(clock, remote)
        await engine.enable()
        assert engine.last_known_remote_modified_time == clock.now

        remote.put_external(remote_blob("Echo"), clock.now + timedelta(milliseconds=500))
        assert await engine.check_for_remote_changes() is False
        assert remote.downloads == 0

        remote.put_external(remote_blob("Newer"), clock.now + timedelta(seconds=5))
        assert await engine.check_for_remote_changes() is True
        assert remote.downloads == 1
        assert [m.name for m in ledger.meters] == ["Newer"]
        assert engine.last_known_remote_modified_time == clock.now + timedelta(seconds=5)
        await engine.close()

    asyncio.run(scenario())


def test_restore_does_not_echo_a_push(clock):
    """Test that the changes applied by a restore are not pushed back."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)
        await engine.enable()
        assert engine.last_known_remote_modified_time is None

        remote.put_external(remote_blob(), clock.now + timedelta(seconds=5))
        assert await engine.check_for_remote_changes() is True

        assert engine.pending_changes == 0
        await asyncio.sleep(SETTLE)
        assert remote.uploads == []
        assert not engine.is_restoring
        assert engine.status == SyncStatus.SUCCESS
        await engine.close()

    asyncio.run(scenario())


def test_restore_guard_released_after_failure(clock):
    """Test that a failed download leaves later edits syncing normally."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)
        await engine.enable()
        remote.put_external(remote_blob(), clock.now)
        remote.fail_next = True

        assert await engine.restore_data(clock.now) is False
        assert not engine.is_restoring
        assert engine.status == SyncStatus.FAILED

        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.sleep(SETTLE)
        assert len(remote.uploads) == 1
        await engine.close()

    asyncio.run(scenario())


def test_corrupt_remote_snapshot_leaves_ledger_alone(clock):
    """Test that an unreadable backup fails the restore and is not refetched."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)
        await engine.enable()
        before = [m.name for m in ledger.meters]
        remote.put_external("not json", clock.now + timedelta(seconds=5))

        assert await engine.check_for_remote_changes() is False
        assert engine.status == SyncStatus.FAILED
        assert [m.name for m in ledger.meters] == before
        assert not engine.is_restoring

        assert await engine.check_for_remote_changes() is False
        assert remote.downloads == 1
        await engine.close()

    asyncio.run(scenario())


def test_duplicate_factor_remote_snapshot_is_rejected(clock):
    """Test that a backup violating meter rules does not replace local data."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)
        await engine.enable()
        blob = json.dumps({
            "exportedAt": "2026-01-19T08:00:00Z",
            "meters": [{"name": "A", "factor": 1.0}, {"name": "B", "factor": 1.0}],
            "events": [],
        })
        remote.put_external(blob, clock.now + timedelta(seconds=5))

        assert await engine.check_for_remote_changes() is False
        assert [m.name for m in ledger.meters] == ["+1x", "-1x"]
        assert engine.status == SyncStatus.FAILED
        await engine.close()

    asyncio.run(scenario())


def test_lost_session_disables_auto_sync(clock):
    """Test that a push without a session turns auto-sync off."""

    async def scenario():
        storage = InMemoryStorage()
        ledger, remote, engine = await make_engine(clock, storage=storage)
        await engine.enable()
        remote.authenticated = False

        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.sleep(SETTLE)

        assert not engine.is_enabled
        assert engine.status == SyncStatus.FAILED
        assert storage.items[ENABLED_KEY] == "false"
        assert remote.uploads == []
        await engine.close()

    asyncio.run(scenario())


def test_transient_push_failure_keeps_auto_sync_on(clock):
    """Test that a failed upload reports Failed and the next edit retries."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)
        await engine.enable()
        remote.fail_next = True

        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.sleep(SETTLE)
        assert engine.is_enabled
        assert engine.status == SyncStatus.FAILED
        assert remote.uploads == []

        await ledger.deactivate_meter()
        await asyncio.sleep(SETTLE)
        assert engine.status == SyncStatus.SUCCESS
        assert len(remote.uploads) == 1
        await engine.close()

    asyncio.run(scenario())


def test_status_listener_sees_transitions(clock):
    """Test the status notifications of an enable followed by a push."""

    async def scenario():
        ledger, _, engine = await make_engine(clock)
        seen = []
        engine.on_status_changed(seen.append)

        await engine.enable()
        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.sleep(SETTLE)

        assert seen == [SyncStatus.IDLE, SyncStatus.SYNCING, SyncStatus.SUCCESS]
        await engine.close()

    asyncio.run(scenario())


def test_enable_seeds_known_remote_time_from_last_sync(clock):
    """Test that a persisted last sync time is reused after restart."""

    async def scenario():
        last = clock.now - timedelta(hours=1)
        storage = InMemoryStorage({LAST_SYNC_KEY: last.isoformat()})
        _, _, engine = await make_engine(clock, storage=storage)

        await engine.enable()

        assert engine.last_sync_time == last
        assert engine.last_known_remote_modified_time == last
        await engine.close()

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "flag,authenticated,expected",
    [("true", True, True), ("true", False, False), ("false", True, False), (None, True, False)],
)
def test_try_restore_state(clock, flag, authenticated, expected):
    """Test re-enabling auto-sync at startup."""

    async def scenario():
        storage = InMemoryStorage({ENABLED_KEY: flag} if flag is not None else {})
        remote = InMemoryBackupStore(authenticated=authenticated, clock=clock)
        _, _, engine = await make_engine(clock, remote, storage)

        assert await engine.try_restore_state() is expected
        assert engine.is_enabled is expected
        await engine.close()

    asyncio.run(scenario())


def test_disable_stops_pushes(clock):
    """Test that edits after disable are not uploaded."""

    async def scenario():
        storage = InMemoryStorage()
        ledger, remote, engine = await make_engine(clock, storage=storage)
        await engine.enable()
        await engine.disable()

        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.sleep(SETTLE)

        assert remote.uploads == []
        assert engine.status == SyncStatus.IDLE
        assert storage.items[ENABLED_KEY] == "false"
        await engine.close()

    asyncio.run(scenario())


def test_inflight_push_finishes_after_disable(clock):
    """Test that disable lets a running upload complete without changing status."""

    async def scenario():
        remote = GatedBackupStore(clock=clock)
        ledger, _, engine = await make_engine(clock, remote)
        await engine.enable()

        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.wait_for(remote.started.wait(), timeout=2)
        await engine.disable()
        assert engine.status == SyncStatus.IDLE

        remote.gate.set()
        await engine.drain()

        assert len(remote.uploads) == 1
        assert engine.status == SyncStatus.IDLE
        await engine.close()

    asyncio.run(scenario())


def test_poll_is_skipped_while_pushing(clock):
    """Test that a remote check does not restore over an upload in progress."""

    async def scenario():
        remote = GatedBackupStore(clock=clock)
        ledger, _, engine = await make_engine(clock, remote)
        await engine.enable()

        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.wait_for(remote.started.wait(), timeout=2)
        remote.put_external(remote_blob(), clock.now + timedelta(seconds=5))

        assert await engine.check_for_remote_changes() is False
        assert remote.downloads == 0

        remote.gate.set()
        await engine.drain()
        await engine.close()

    asyncio.run(scenario())


def test_poll_loop_pulls_remote_changes(clock):
    """Test the background poll restoring a backup written elsewhere."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock, poll_interval_seconds=0.05)
        await engine.enable()

        remote.put_external(remote_blob("From laptop", 2.0), clock.now)
        await asyncio.sleep(SETTLE)

        assert [m.name for m in ledger.meters] == ["From laptop"]
        assert remote.downloads == 1
        assert remote.uploads == []
        await engine.close()

    asyncio.run(scenario())


def test_sync_now_uploads_without_auto_sync(clock):
    """Test a manual push while auto-sync is off."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)

        await engine.sync_now()

        assert remote.uploads == [ledger.export_data()]
        assert engine.last_sync_time == clock.now
        await engine.close()

    asyncio.run(scenario())


def test_sync_now_requires_authentication(clock):
    """Test that a manual push without a session fails."""

    async def scenario():
        _, _, engine = await make_engine(clock, InMemoryBackupStore(authenticated=False))

        with pytest.raises(AuthenticationRequired):
            await engine.sync_now()
        await engine.close()

    asyncio.run(scenario())


def test_restore_now(clock):
    """Test a manual pull with and without a remote backup."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)

        assert await engine.restore_now() is False

        remote.put_external(remote_blob("Pulled", 4.0), clock.now)
        assert await engine.restore_now() is True
        assert [m.name for m in ledger.meters] == ["Pulled"]
        assert engine.last_known_remote_modified_time == clock.now
        await engine.close()

    asyncio.run(scenario())


class FlakyStorage(InMemoryStorage):
    """Storage whose first write of the enabled flag fails."""

    def __init__(self):
        super().__init__()
        self.fail_flag_write = True

    async def set_item(self, key, value):
        if key == ENABLED_KEY and self.fail_flag_write:
            self.fail_flag_write = False
            raise OSError("disk full")
        await super().set_item(key, value)


def test_enable_can_be_retried_after_flag_write_fails(clock):
    """Test that a failed flag write leaves auto-sync off and retryable."""

    async def scenario():
        storage = FlakyStorage()
        ledger, remote, engine = await make_engine(clock, storage=storage)

        with pytest.raises(OSError):
            await engine.enable()
        assert not engine.is_enabled
        assert ENABLED_KEY not in storage.items

        await engine.enable()
        assert engine.is_enabled
        assert storage.items[ENABLED_KEY] == "true"

        await ledger.activate_meter(ledger.meters[0].id)
        await asyncio.sleep(SETTLE)
        assert len(remote.uploads) == 1
        await engine.close()

    asyncio.run(scenario())


def test_sync_now_reports_status_while_disabled(clock):
    """Test that a manual push notifies listeners with auto-sync off."""

    async def scenario():
        _, _, engine = await make_engine(clock)
        seen = []
        engine.on_status_changed(seen.append)

        await engine.sync_now()

        assert seen == [SyncStatus.SYNCING, SyncStatus.SUCCESS]
        assert engine.status == SyncStatus.SUCCESS
        assert not engine.is_enabled
        await engine.close()

    asyncio.run(scenario())


def test_failed_sync_now_reports_failure_while_disabled(clock):
    """Test that a failed manual push leaves the status at Failed."""

    async def scenario():
        _, remote, engine = await make_engine(clock)
        remote.fail_next = True

        with pytest.raises(TransientSyncError):
            await engine.sync_now()

        assert engine.status == SyncStatus.FAILED
        assert remote.uploads == []
        await engine.close()

    asyncio.run(scenario())


def test_restore_now_reports_status_while_disabled(clock):
    """Test the statuses of manual pulls with and without a backup."""

    async def scenario():
        _, remote, engine = await make_engine(clock)
        seen = []
        engine.on_status_changed(seen.append)

        assert await engine.restore_now() is False
        assert seen == [SyncStatus.SYNCING, SyncStatus.IDLE]

        seen.clear()
        remote.put_external(remote_blob("Pulled", 4.0), clock.now)
        assert await engine.restore_now() is True
        assert seen == [SyncStatus.SYNCING, SyncStatus.SUCCESS]
        await engine.close()

    asyncio.run(scenario())


def test_restore_now_of_corrupt_backup_fails(clock):
    """Test that an unreadable backup raises and leaves local data alone."""

    async def scenario():
        ledger, remote, engine = await make_engine(clock)
        before = [m.name for m in ledger.meters]
        remote.put_external("not json", clock.now)

        with pytest.raises(CorruptSnapshotError):
            await engine.restore_now()

        assert engine.status == SyncStatus.FAILED
        assert not engine.is_restoring
        assert [m.name for m in ledger.meters] == before
        await engine.close()

    asyncio.run(scenario())
