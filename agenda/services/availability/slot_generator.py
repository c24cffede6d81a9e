# ============================================================================
# agenda/services/availability/slot_generator.py
# Pure slot math shared by availability reads and appointment writes
# ============================================================================
"""
Slot generator.

Given open intervals for a day, a service duration, the establishment buffer
and grid, and the professional's occupied intervals, produce the bookable
start times. Deterministic: the same inputs always give the same output.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence

from agenda.services.calendar.calendar_rules import Interval, local_midnight


def peak_concurrency(busy: Iterable[Interval], window: Interval) -> int:
    """Max number of busy intervals overlapping at any instant inside `window`."""
    points = []
    for interval in busy:
        start = max(interval.start, window.start)
        end = min(interval.end, window.end)
        if end <= start:
            continue
        points.append((start, 1))
        points.append((end, -1))

    # Ends sort before starts at the same instant (half-open intervals)
    points.sort(key=lambda point: (point[0], point[1]))

    current = peak = 0
    for _, delta in points:
        current += delta
        peak = max(peak, current)
    return peak


def find_conflicts(
        candidate: Interval,
        busy: Iterable[Interval],
        buffer_minutes: int = 0,
) -> List[Interval]:
    """Busy intervals that overlap the candidate widened by the buffer on both sides."""
    buffer = timedelta(minutes=buffer_minutes)
    window = Interval(candidate.start - buffer, candidate.end + buffer)
    return [interval for interval in busy if interval.overlaps(window)]


def fits_capacity(
        candidate: Interval,
        busy: Sequence[Interval],
        buffer_minutes: int = 0,
        capacity: int = 1,
) -> bool:
    """
    True when one more appointment fits at `candidate`.

    With capacity 1 any overlap with the buffered window rejects. With more
    capacity, appointments inside the buffered window are counted and the
    candidate is rejected only once their peak reaches capacity, so the buffer
    only matters when the resource is full.
    """
    conflicts = find_conflicts(candidate, busy, buffer_minutes)
    if not conflicts:
        return True
    if capacity <= 1:
        return False

    buffer = timedelta(minutes=buffer_minutes)
    window = Interval(candidate.start - buffer, candidate.end + buffer)
    return peak_concurrency(conflicts, window) < capacity


def grid_starts(interval: Interval, duration_minutes: int, slot_interval_minutes: int) -> List[datetime]:
    """Grid-aligned starts (anchored at local midnight) whose service fits in `interval`."""
    step = max(int(slot_interval_minutes), 1)
    duration = timedelta(minutes=duration_minutes)
    midnight = local_midnight(interval.start)

    offset = (interval.start - midnight) // timedelta(minutes=1)
    if (interval.start - midnight) % timedelta(minutes=1):
        offset += 1
    first = -(-offset // step) * step

    starts = []
    minute = first
    while True:
        start = midnight + timedelta(minutes=minute)
        if start + duration > interval.end:
            break
        starts.append(start)
        minute += step
    return starts


def is_on_grid(start: datetime, slot_interval_minutes: int) -> bool:
    step = max(int(slot_interval_minutes), 1)
    offset = start - local_midnight(start)
    return offset % timedelta(minutes=step) == timedelta(0)


def find_slot_starts(
        open_intervals: Sequence[Interval],
        duration_minutes: int,
        buffer_minutes: int,
        slot_interval_minutes: int,
        busy: Sequence[Interval] = (),
        capacity: int = 1,
        now: Optional[datetime] = None,
        min_lead_minutes: int = 0,
) -> List[datetime]:
    """Bookable start datetimes, ascending and de-duplicated."""
    earliest = None
    if now is not None:
        earliest = now + timedelta(minutes=min_lead_minutes)

    duration = timedelta(minutes=duration_minutes)
    seen = {}
    for interval in open_intervals:
        for start in grid_starts(interval, duration_minutes, slot_interval_minutes):
            if earliest is not None and start < earliest:
                continue
            candidate = Interval(start, start + duration)
            if not fits_capacity(candidate, busy, buffer_minutes, capacity):
                continue
            seen[start.astimezone(timezone.utc)] = start

    return [seen[key] for key in sorted(seen)]


def format_slot(start: datetime) -> str:
    return start.strftime("%H:%M")


def generate_slots(
        open_intervals: Sequence[Interval],
        duration_minutes: int,
        buffer_minutes: int,
        slot_interval_minutes: int,
        busy: Sequence[Interval] = (),
        capacity: int = 1,
        now: Optional[datetime] = None,
        min_lead_minutes: int = 0,
) -> List[str]:
    """Bookable "HH:MM" start times for one professional/day."""
    starts = find_slot_starts(
        open_intervals,
        duration_minutes,
        buffer_minutes,
        slot_interval_minutes,
        busy=busy,
        capacity=capacity,
        now=now,
        min_lead_minutes=min_lead_minutes,
    )
    labels = []
    for start in starts:
        label = format_slot(start)
        if label not in labels:
            labels.append(label)
    return labels
