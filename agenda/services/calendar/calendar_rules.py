# ============================================================================
# agenda/services/calendar/calendar_rules.py
# Pure interval math: weekly hours + blocks -> open intervals for one day
# ============================================================================
"""
Calendar rules resolver.

Turns an establishment's static configuration (weekly hours, professional
hours, one-off and recurring blocks) into the disjoint open intervals of a
single local day. Everything here is a pure function of its inputs; the only
database access lives in `load_calendar_rules`.
"""
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, NamedTuple, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_
from sqlalchemy.orm import Session

from agenda.models.establishment import BusinessHours, Establishment
from agenda.models.professional import ProfessionalHours
from agenda.models.time_block import RecurringTimeBlock, TimeBlock


class Interval(NamedTuple):
    """Half-open [start, end) interval of aware datetimes."""
    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end


class HoursRule(NamedTuple):
    weekday: int
    open_time: Optional[time]
    close_time: Optional[time]
    closed: bool = False


class RecurringBlockRule(NamedTuple):
    weekday: int
    start_time: time
    end_time: time
    professional_id: Optional[UUID] = None


class OneOffBlock(NamedTuple):
    start_at: datetime
    end_at: datetime
    professional_id: Optional[UUID] = None


class CalendarRules(NamedTuple):
    """Everything the resolver needs for one professional, already loaded."""
    establishment_hours: Dict[int, HoursRule]
    professional_hours: Dict[int, HoursRule]
    recurring_blocks: List[RecurringBlockRule]
    blocks: List[OneOffBlock]


def weekday_of(day: date) -> int:
    """Weekday with 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


def get_timezone(name: Optional[str], fallback: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(fallback)


def local_datetime(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def local_midnight(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _hours_window(rule: Optional[HoursRule], day: date, tz: ZoneInfo) -> Optional[Interval]:
    if rule is None or rule.closed or rule.open_time is None or rule.close_time is None:
        return None
    start = local_datetime(day, rule.open_time, tz)
    end = local_datetime(day, rule.close_time, tz)
    if end <= start:
        return None
    return Interval(start, end)


def resolve_base_hours(day: date, tz: ZoneInfo, rules: CalendarRules) -> Optional[Interval]:
    """
    Opening window for the day before blocks are applied.

    A professional row for the weekday replaces the establishment row and is
    clipped to it when the establishment has hours that day. An explicitly
    closed establishment day stays closed.
    """
    weekday = weekday_of(day)
    establishment_rule = rules.establishment_hours.get(weekday)
    professional_rule = rules.professional_hours.get(weekday)

    establishment_window = _hours_window(establishment_rule, day, tz)
    if professional_rule is None:
        return establishment_window

    professional_window = _hours_window(professional_rule, day, tz)
    if professional_window is None:
        return None
    if establishment_rule is None:
        return professional_window
    if establishment_window is None:
        return None

    start = max(establishment_window.start, professional_window.start)
    end = min(establishment_window.end, professional_window.end)
    if end <= start:
        return None
    return Interval(start, end)


def subtract_interval(intervals: Iterable[Interval], block: Interval) -> List[Interval]:
    """Remove `block` from every interval, splitting or dropping as needed."""
    result = []
    for interval in intervals:
        if not interval.overlaps(block):
            result.append(interval)
            continue
        if block.start > interval.start:
            result.append(Interval(interval.start, block.start))
        if block.end < interval.end:
            result.append(Interval(block.end, interval.end))
    return [i for i in result if i.end > i.start]


def _applies_to(block_professional_id: Optional[UUID], professional_id: Optional[UUID]) -> bool:
    return block_professional_id is None or block_professional_id == professional_id


def resolve_open_intervals(
        day: date,
        tz: ZoneInfo,
        rules: CalendarRules,
        professional_id: Optional[UUID] = None,
) -> List[Interval]:
    """Open intervals for `day` (local to `tz`), sorted, disjoint, non-empty."""
    window = resolve_base_hours(day, tz, rules)
    if window is None:
        return []

    intervals = [window]
    weekday = weekday_of(day)

    for rule in rules.recurring_blocks:
        if rule.weekday != weekday or not _applies_to(rule.professional_id, professional_id):
            continue
        block = Interval(local_datetime(day, rule.start_time, tz), local_datetime(day, rule.end_time, tz))
        if block.end > block.start:
            intervals = subtract_interval(intervals, block)

    for one_off in rules.blocks:
        if not _applies_to(one_off.professional_id, professional_id):
            continue
        block = Interval(one_off.start_at.astimezone(tz), one_off.end_at.astimezone(tz))
        if block.end > block.start:
            intervals = subtract_interval(intervals, block)

    return sorted(intervals)


def load_calendar_rules(
        db: Session,
        establishment: Establishment,
        professional_id: Optional[UUID],
        range_start: datetime,
        range_end: datetime,
) -> CalendarRules:
    """Fetch hours and blocks for one professional; one-off blocks limited to the range."""
    establishment_hours = {
        row.weekday: HoursRule(row.weekday, row.open_time, row.close_time, bool(row.closed))
        for row in db.query(BusinessHours).filter(
            BusinessHours.establishment_id == establishment.id
        ).all()
    }

    professional_hours = {}
    if professional_id is not None:
        professional_hours = {
            row.weekday: HoursRule(row.weekday, row.start_time, row.end_time, bool(row.closed))
            for row in db.query(ProfessionalHours).filter(
                ProfessionalHours.professional_id == professional_id
            ).all()
        }

    professional_filter = (
        RecurringTimeBlock.professional_id.is_(None)
        if professional_id is None
        else or_(RecurringTimeBlock.professional_id.is_(None),
                 RecurringTimeBlock.professional_id == professional_id)
    )
    recurring_blocks = [
        RecurringBlockRule(row.weekday, row.start_time, row.end_time, row.professional_id)
        for row in db.query(RecurringTimeBlock).filter(
            RecurringTimeBlock.establishment_id == establishment.id,
            RecurringTimeBlock.active == True,
            professional_filter,
        ).all()
    ]

    block_filter = (
        TimeBlock.professional_id.is_(None)
        if professional_id is None
        else or_(TimeBlock.professional_id.is_(None), TimeBlock.professional_id == professional_id)
    )
    blocks = [
        OneOffBlock(row.start_at, row.end_at, row.professional_id)
        for row in db.query(TimeBlock).filter(
            TimeBlock.establishment_id == establishment.id,
            TimeBlock.start_at < range_end,
            TimeBlock.end_at > range_start,
            block_filter,
        ).all()
    ]

    return CalendarRules(establishment_hours, professional_hours, recurring_blocks, blocks)


def day_bounds(day: date, tz: ZoneInfo) -> Interval:
    """The whole local day as an interval."""
    start = local_datetime(day, time(0, 0), tz)
    return Interval(start, local_datetime(day + timedelta(days=1), time(0, 0), tz))
