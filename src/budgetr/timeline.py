"""Point-in-time balance reconstruction for the timeline chart."""

from datetime import datetime, timedelta
from typing import Iterable

from .models.ledger import MeterEvent, TimelinePoint


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600.0


def build_timeline(
    events: Iterable[MeterEvent],
    period: timedelta,
    now: datetime,
) -> list[TimelinePoint]:
    """Reconstruct balance samples covering ``[now - period, now]``.

    The first sample sits at the window start and carries everything accrued
    before it; each event inside the window adds a sample at its start
    (balance before the event) and, if it closed inside the window, one at
    its end. The last sample is always ``now``. Between samples the balance
    moves linearly, so the points can be plotted directly.

    Args:
        events: Ledger events in any order
        period: Window length
        now: End of the window

    Returns:
        Samples ordered by timestamp
    """
    events = list(events)
    window_start = now - period

    running = 0.0
    for event in events:
        if event.start_time >= window_start:
            continue
        # Active events and events still running at the window start are
        # clipped to the window start.
        effective_end = event.end_time if event.end_time is not None else window_start
        if effective_end > window_start:
            effective_end = window_start
        running += _hours(effective_end - event.start_time) * event.factor

    points = [TimelinePoint(timestamp=window_start, balance_hours=running)]

    overlapping = sorted(
        (
            e
            for e in events
            if e.start_time <= now and (e.end_time if e.end_time is not None else now) >= window_start
        ),
        key=lambda e: e.start_time,
    )

    for event in overlapping:
        if event.start_time >= window_start:
            points.append(TimelinePoint(timestamp=event.start_time, balance_hours=running))

        effective_start = max(event.start_time, window_start)
        effective_end = event.end_time if event.end_time is not None else now
        if effective_end > now:
            effective_end = now
        running += _hours(effective_end - effective_start) * event.factor

        if event.end_time is not None and event.end_time <= now:
            points.append(TimelinePoint(timestamp=event.end_time, balance_hours=running))

    points.append(TimelinePoint(timestamp=now, balance_hours=running))

    return sorted(points, key=lambda p: p.timestamp)
