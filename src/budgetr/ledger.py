"""In-memory time ledger: meters, events, balance and change notification."""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import (
    CorruptSnapshotError,
    FactorOutOfRange,
    InvalidArgument,
    InvalidImportError,
    InvalidOperation,
)
from .meters import FACTOR_EPSILON, DefaultMeterConfiguration, MeterConfigurationSource, has_duplicate_factor
from .models.ledger import (
    DEFAULT_TIMELINE_PERIOD,
    ExportSnapshot,
    LedgerSnapshot,
    Meter,
    MeterEvent,
    TimelinePoint,
)
from .store import LedgerStore
from .timeline import build_timeline

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 40
MIN_FACTOR = -10.0
MAX_FACTOR = 10.0

Clock = Callable[[], datetime]
Listener = Callable[[], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_name(name: str) -> str:
    trimmed = (name or "").strip()
    if not 1 <= len(trimmed) <= MAX_NAME_LENGTH:
        raise InvalidArgument(f"Meter name must be between 1 and {MAX_NAME_LENGTH} characters.")
    return trimmed


def parse_export(blob: str) -> ExportSnapshot:
    """Parse an export/backup blob.

    Raises:
        CorruptSnapshotError: If the blob is not a valid export document
    """
    try:
        return ExportSnapshot.model_validate_json(blob)
    except (PydanticValidationError, ValueError) as e:
        raise CorruptSnapshotError(f"Invalid import data format: {e}") from e


class TimeLedger:
    """Owns the meters and events of one user.

    Mutations notify subscribers first and then persist the new state
    through the LedgerStore. Persistence is best effort: a failed save is
    logged and the in-memory change stands.
    """

    def __init__(
        self,
        store: LedgerStore,
        meter_config: Optional[MeterConfigurationSource] = None,
        clock: Clock = utc_now,
    ):
        """Initialize an empty ledger.

        Args:
            store: Snapshot persistence
            meter_config: Source of meters when none are persisted
            clock: Returns the current aware UTC time
        """
        self.store = store
        self.meter_config = meter_config or DefaultMeterConfiguration()
        self.clock = clock
        self._meters: list[Meter] = []
        self._events: list[MeterEvent] = []
        self._timeline_period = DEFAULT_TIMELINE_PERIOD
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------ notification

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state-changed callback; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("State-changed listener failed")

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            meters=[m.model_copy() for m in self._meters],
            events=[e.model_copy() for e in self._events],
            timeline_period=self._timeline_period,
        )

    async def save(self) -> None:
        try:
            await self.store.save(self.snapshot())
        except OSError as e:
            logger.warning(f"Failed to persist ledger: {e}")

    async def _commit(self) -> None:
        self._notify()
        await self.save()

    # ------------------------------------------------------------ queries

    @property
    def meters(self) -> list[Meter]:
        return sorted(self._meters, key=lambda m: m.display_order)

    @property
    def events(self) -> list[MeterEvent]:
        return list(self._events)

    @property
    def timeline_period(self) -> timedelta:
        return self._timeline_period

    def get_meter(self, meter_id: uuid.UUID) -> Optional[Meter]:
        return next((m for m in self._meters if m.id == meter_id), None)

    def get_active_event(self) -> Optional[MeterEvent]:
        return next((e for e in self._events if e.is_active), None)

    def get_current_balance(self) -> timedelta:
        now = self.clock()
        return sum((e.duration(now) * e.factor for e in self._events), timedelta(0))

    def get_current_balance_hours(self) -> float:
        now = self.clock()
        return sum(e.contribution_hours(now) for e in self._events)

    def get_timeline_data(self, period: Optional[timedelta] = None) -> list[TimelinePoint]:
        return build_timeline(
            self._events, period if period is not None else self._timeline_period, self.clock()
        )

    def export_data(self) -> str:
        export = ExportSnapshot(
            exported_at=self.clock(),
            meters=self.meters,
            events=self._events,
        )
        return export.model_dump_json(by_alias=True, indent=2)

    # ------------------------------------------------------------ event mutations

    def _close_active(self) -> bool:
        active = self.get_active_event()
        if active is None:
            return False
        active.end_time = self.clock()
        return True

    async def activate_meter(self, meter_id: uuid.UUID) -> Optional[MeterEvent]:
        """Start a meter, stopping whichever one is running.

        Returns:
            The new active event, or None if the meter does not exist
        """
        await self.deactivate_meter()

        meter = self.get_meter(meter_id)
        if meter is None:
            return None

        event = MeterEvent(start_time=self.clock(), factor=meter.factor, meter_name=meter.name)
        self._events.append(event)
        logger.debug(f"Activated meter {meter.name} ({meter.factor:+g}x)")
        await self._commit()
        return event

    async def deactivate_meter(self) -> None:
        if self._close_active():
            await self._commit()

    async def delete_event(self, event_id: uuid.UUID) -> None:
        event = next((e for e in self._events if e.id == event_id), None)
        if event is None:
            return
        self._events.remove(event)
        await self._commit()

    async def set_timeline_period(self, period: timedelta) -> None:
        if period <= timedelta(0):
            raise InvalidArgument("Timeline period must be positive.")
        if period == self._timeline_period:
            return
        self._timeline_period = period
        await self._commit()

    # ------------------------------------------------------------ meter mutations

    async def rename_meter(self, meter_id: uuid.UUID, new_name: str) -> None:
        """Rename a meter.

        Past events keep the name they were recorded with; only the running
        event (matched by factor) follows the rename.
        """
        name = _validate_name(new_name)
        meter = self.get_meter(meter_id)
        if meter is None:
            return

        meter.name = name
        active = self.get_active_event()
        if active is not None and active.factor == meter.factor:
            active.meter_name = name
        await self._commit()

    async def delete_meter(self, meter_id: uuid.UUID) -> None:
        meter = self.get_meter(meter_id)
        if meter is None:
            return

        active = self.get_active_event()
        if active is not None and active.meter_name == meter.name:
            raise InvalidOperation("Cannot delete the currently active meter.")

        self._meters.remove(meter)
        await self._commit()

    async def add_meter(self, name: str, factor: float) -> Meter:
        """Add a meter to the registry.

        Raises:
            InvalidArgument: If the name is invalid or the factor duplicates an existing one
            FactorOutOfRange: If the factor is outside [-10, 10]
        """
        name = _validate_name(name)
        if not MIN_FACTOR <= factor <= MAX_FACTOR:
            raise FactorOutOfRange(f"Factor must be between {MIN_FACTOR:g} and {MAX_FACTOR:g}.")
        if any(abs(m.factor - factor) < FACTOR_EPSILON for m in self._meters):
            raise InvalidArgument(f"A meter with factor {factor:g} already exists.")

        display_order = max((m.display_order for m in self._meters), default=-1) + 1
        meter = Meter(name=name, factor=factor, display_order=display_order)
        self._meters.append(meter)
        await self._commit()
        return meter

    # ------------------------------------------------------------ snapshots

    def _close_orphaned_events(self) -> int:
        """Stop active events whose factor no longer matches any meter."""
        factors = {m.factor for m in self._meters}
        now = self.clock()
        closed = 0
        for event in self._events:
            if event.is_active and event.factor not in factors:
                event.end_time = now
                closed += 1
        if closed:
            logger.info(f"Stopped {closed} active event(s) with no matching meter")
        return closed

    def _enforce_single_active(self) -> None:
        active = [e for e in self._events if e.is_active]
        if len(active) <= 1:
            return
        keep = max(active, key=lambda e: e.start_time)
        now = self.clock()
        for event in active:
            if event is not keep:
                event.end_time = now
        logger.warning(f"Snapshot had {len(active)} active events; kept the latest")

    async def import_data(self, blob: str) -> None:
        """Replace meters and events with the contents of an export blob.

        Raises:
            CorruptSnapshotError: If the blob does not parse
            InvalidImportError: If it has no meters or duplicate factors
        """
        data = parse_export(blob)

        if not data.meters:
            raise InvalidImportError("Import data must contain at least one meter.")
        if has_duplicate_factor(data.meters):
            factors = sorted({f"{m.factor:g}" for m in data.meters})
            raise InvalidImportError(
                f"Duplicate meter factors detected among: {', '.join(factors)}. "
                "Each meter must have a unique factor."
            )

        for order, meter in enumerate(data.meters):
            meter.display_order = order

        self._meters = list(data.meters)
        self._events = list(data.events)
        self._close_orphaned_events()
        self._enforce_single_active()
        logger.info(f"Imported {len(self._meters)} meter(s) and {len(self._events)} event(s)")
        await self._commit()

    async def load(self) -> None:
        """Load the persisted ledger, falling back to configured meters."""
        try:
            snapshot = await self.store.load()
        except CorruptSnapshotError as e:
            logger.warning(f"{e}; starting from defaults")
            snapshot = None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load ledger: {e}; starting from defaults")
            snapshot = None

        if snapshot is not None:
            self._events = snapshot.events
            self._meters = snapshot.meters
            if snapshot.timeline_period > timedelta(0):
                self._timeline_period = snapshot.timeline_period
            else:
                self._timeline_period = DEFAULT_TIMELINE_PERIOD

        if not self._meters:
            self._meters = await self.meter_config.load_meters()

        self._close_orphaned_events()
        self._enforce_single_active()
        await self._commit()
