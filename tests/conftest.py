"""Pytest fixtures for Budgetr tests."""

from datetime import datetime, timedelta, timezone

import pytest

from budgetr.ledger import TimeLedger
from budgetr.meters import DefaultMeterConfiguration
from budgetr.store import InMemoryStorage, LedgerStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, hour: int, minute: int = 0) -> datetime:
        self.now = self.now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return self.now


@pytest.fixture
def clock():
    """Clock starting at 2026-01-19 09:00 UTC."""
    return FakeClock(datetime(2026, 1, 19, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger(storage, clock):
    """Ledger on in-memory storage; load() seeds the default +1x / -1x meters."""
    ledger = TimeLedger(LedgerStore(storage), DefaultMeterConfiguration(), clock=clock)
    return ledger
