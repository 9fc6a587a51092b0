"""Tests for timeline reconstruction."""

from datetime import datetime, timedelta, timezone

import pytest

from budgetr.models.ledger import MeterEvent
from budgetr.timeline import build_timeline


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 19, hour, minute, tzinfo=timezone.utc)


def event(start, end, factor):
    return MeterEvent(start_time=start, end_time=end, factor=factor, meter_name="m")


def as_pairs(points):
    return [(p.timestamp, pytest.approx(p.balance_hours)) for p in points]


def test_empty_ledger_has_window_endpoints():
    """Test that no events yields a flat line from window start to now."""
    points = build_timeline([], timedelta(hours=24), at(12))

    assert as_pairs(points) == [(at(12) - timedelta(hours=24), 0.0), (at(12), 0.0)]


def test_two_events_inside_window():
    """Test the samples for an earn-then-spend sequence."""
    events = [event(at(10), at(11), -1.0), event(at(9), at(10), 1.0)]

    points = build_timeline(events, timedelta(hours=2), at(11))

    assert as_pairs(points) == [
        (at(9), 0.0),
        (at(9), 0.0),
        (at(10), 1.0),
        (at(10), 1.0),
        (at(11), 0.0),
        (at(11), 0.0),
    ]


def test_events_before_window_accumulate_into_first_point():
    """Test that history before the window shows up as the starting balance."""
    events = [event(at(5), at(6), 1.0), event(at(6), at(8), 0.5)]

    points = build_timeline(events, timedelta(hours=2), at(11))

    assert as_pairs(points) == [(at(9), 2.0), (at(11), 2.0)]


def test_event_straddling_window_start_is_split():
    """Test that an event crossing the window start is counted exactly once."""
    events = [event(at(7), at(10), 1.0)]

    points = build_timeline(events, timedelta(hours=2), at(11))

    assert as_pairs(points) == [(at(9), 2.0), (at(10), 3.0), (at(11), 3.0)]


def test_active_event_runs_to_now():
    """Test that a running event contributes up to now without an end sample."""
    events = [event(at(8), None, 2.0)]

    points = build_timeline(events, timedelta(hours=2), at(11))

    assert as_pairs(points) == [(at(9), 2.0), (at(11), 6.0)]


def test_active_event_started_inside_window():
    """Test a start sample for a running event that began in the window."""
    events = [event(at(9), at(10), 1.0), event(at(10, 30), None, -1.0)]

    points = build_timeline(events, timedelta(hours=2), at(11))

    assert as_pairs(points) == [
        (at(9), 0.0),
        (at(9), 0.0),
        (at(10), 1.0),
        (at(10, 30), 1.0),
        (at(11), 0.5),
    ]


def test_last_point_matches_total_balance():
    """Test that the final sample equals the sum of all contributions."""
    now = at(18)
    events = [
        event(at(1), at(3), 1.0),
        event(at(4), at(9), -0.5),
        event(at(9), at(14), 2.0),
        event(at(15), None, -1.0),
    ]

    points = build_timeline(events, timedelta(hours=6), now)

    total = sum(e.contribution_hours(now) for e in events)
    assert points[-1].timestamp == now
    assert points[-1].balance_hours == pytest.approx(total)
    assert [p.timestamp for p in points] == sorted(p.timestamp for p in points)
