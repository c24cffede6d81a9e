from datetime import datetime, time, timedelta, timezone
from uuid import uuid4

from agenda.services.calendar.calendar_rules import (
    CalendarRules,
    HoursRule,
    Interval,
    OneOffBlock,
    RecurringBlockRule,
    load_calendar_rules,
    resolve_open_intervals,
    subtract_interval,
    weekday_of,
)
from agenda.models import ProfessionalHours, RecurringTimeBlock, TimeBlock
from conftest import MONDAY, SUNDAY, TZ, local

WEEK_HOURS = {
    0: HoursRule(0, None, None, True),
    **{day: HoursRule(day, time(9, 0), time(18, 0)) for day in range(1, 7)},
}


def rules(professional_hours=None, recurring=None, blocks=None):
    return CalendarRules(WEEK_HOURS, professional_hours or {}, recurring or [], blocks or [])


def test_weekday_starts_on_sunday():
    assert weekday_of(SUNDAY) == 0
    assert weekday_of(MONDAY) == 1


def test_open_day_is_one_interval():
    intervals = resolve_open_intervals(MONDAY, TZ, rules())
    assert intervals == [Interval(local(MONDAY, "09:00"), local(MONDAY, "18:00"))]


def test_closed_day_has_no_intervals():
    assert resolve_open_intervals(SUNDAY, TZ, rules()) == []


def test_recurring_lunch_block_splits_the_day():
    lunch = RecurringBlockRule(1, time(12, 0), time(13, 0))
    intervals = resolve_open_intervals(MONDAY, TZ, rules(recurring=[lunch]))
    assert intervals == [
        Interval(local(MONDAY, "09:00"), local(MONDAY, "12:00")),
        Interval(local(MONDAY, "13:00"), local(MONDAY, "18:00")),
    ]


def test_recurring_block_on_other_weekday_is_ignored():
    tuesday_lunch = RecurringBlockRule(2, time(12, 0), time(13, 0))
    assert len(resolve_open_intervals(MONDAY, TZ, rules(recurring=[tuesday_lunch]))) == 1


def test_touching_block_does_not_split():
    block = OneOffBlock(local(MONDAY, "18:00"), local(MONDAY, "19:00"))
    intervals = resolve_open_intervals(MONDAY, TZ, rules(blocks=[block]))
    assert intervals == [Interval(local(MONDAY, "09:00"), local(MONDAY, "18:00"))]


def test_block_covering_the_day_leaves_nothing():
    block = OneOffBlock(local(MONDAY, "00:00"), local(MONDAY, "23:59"))
    assert resolve_open_intervals(MONDAY, TZ, rules(blocks=[block])) == []


def test_professional_block_only_applies_to_that_professional():
    ana, bia = uuid4(), uuid4()
    block = OneOffBlock(local(MONDAY, "09:00"), local(MONDAY, "12:00"), ana)

    assert resolve_open_intervals(MONDAY, TZ, rules(blocks=[block]), ana) == [
        Interval(local(MONDAY, "12:00"), local(MONDAY, "18:00"))
    ]
    assert resolve_open_intervals(MONDAY, TZ, rules(blocks=[block]), bia) == [
        Interval(local(MONDAY, "09:00"), local(MONDAY, "18:00"))
    ]


def test_professional_hours_are_clipped_to_establishment_hours():
    hours = {1: HoursRule(1, time(8, 0), time(14, 0))}
    assert resolve_open_intervals(MONDAY, TZ, rules(professional_hours=hours)) == [
        Interval(local(MONDAY, "09:00"), local(MONDAY, "14:00"))
    ]


def test_professional_day_off():
    hours = {1: HoursRule(1, None, None, True)}
    assert resolve_open_intervals(MONDAY, TZ, rules(professional_hours=hours)) == []


def test_professional_hours_do_not_open_a_closed_establishment_day():
    hours = {0: HoursRule(0, time(9, 0), time(12, 0))}
    assert resolve_open_intervals(SUNDAY, TZ, rules(professional_hours=hours)) == []


def test_inverted_hours_mean_closed():
    week = dict(WEEK_HOURS)
    week[1] = HoursRule(1, time(18, 0), time(9, 0))
    assert resolve_open_intervals(MONDAY, TZ, CalendarRules(week, {}, [], [])) == []


def test_subtract_interval_drops_zero_length_pieces():
    base = [Interval(local(MONDAY, "09:00"), local(MONDAY, "10:00"))]
    block = Interval(local(MONDAY, "09:00"), local(MONDAY, "09:30"))
    assert subtract_interval(base, block) == [Interval(local(MONDAY, "09:30"), local(MONDAY, "10:00"))]


def test_load_calendar_rules_reads_rows(db, establishment, professional):
    db.add(ProfessionalHours(professional_id=professional.id, weekday=1,
                             start_time=time(10, 0), end_time=time(16, 0)))
    db.add(RecurringTimeBlock(establishment_id=establishment.id, weekday=1,
                              start_time=time(12, 0), end_time=time(13, 0), reason="Almoço"))
    db.add(TimeBlock(establishment_id=establishment.id, professional_id=professional.id,
                     start_at=local(MONDAY, "15:00"), end_at=local(MONDAY, "16:00")))
    # Outside the loaded range
    db.add(TimeBlock(establishment_id=establishment.id,
                     start_at=local(MONDAY + timedelta(days=7), "09:00"),
                     end_at=local(MONDAY + timedelta(days=7), "18:00")))
    db.commit()

    start = local(MONDAY, "00:00").astimezone(timezone.utc)
    loaded = load_calendar_rules(db, establishment, professional.id, start, start + timedelta(days=1))

    assert len(loaded.blocks) == 1
    assert resolve_open_intervals(MONDAY, TZ, loaded, professional.id) == [
        Interval(local(MONDAY, "10:00"), local(MONDAY, "12:00")),
        Interval(local(MONDAY, "13:00"), local(MONDAY, "15:00")),
    ]
