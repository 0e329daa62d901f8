# dosewatch/core/scheduler/calculator.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, time as datetime_time, timedelta, timezone
from typing import Union
from zoneinfo import ZoneInfo
from dosewatch.core.models.recurrence import (
    RecurrenceRule,
    DailyFixedTime,
    CustomTimesPerDay,
    FixedIntervalHours,
)
from dosewatch.core.models.schedule import ActiveWindow

COURSE_ENDED = 'course-ended'


@dataclass(slots=True, frozen=True)
class Terminal:
    """No further occurrences exist for the schedule."""

    reason: str = COURSE_ENDED


NextFire = Union[datetime, Terminal]


def calculate_next_fire(
    rule: RecurrenceRule, window: ActiveWindow, occurrence: datetime
) -> NextFire:
    """
    Calculate the occurrence following one that was just processed.

    Never loops to catch up with the current time: if the result is still in
    the past the schedule simply stays due and the next cycle advances it
    again.

    Args:
        rule: Recurrence rule of the schedule
        window: Course boundary; an instant at or after `window.end` is Terminal
        occurrence: The occurrence being advanced past (timezone-aware)

    Returns:
        Next occurrence as UTC-aware datetime, or Terminal

    Raises:
        ValueError: If occurrence is naive
    """
    if occurrence.tzinfo is None:
        raise ValueError('occurrence must be timezone-aware')

    match rule:
        case FixedIntervalHours():
            next_fire = occurrence + timedelta(hours=rule.hours)
        case DailyFixedTime():
            next_fire = _next_daily(rule, occurrence)
        case CustomTimesPerDay():
            next_fire = _next_custom(rule, occurrence)

    return _bounded(next_fire, window)


def first_occurrence(rule: RecurrenceRule, window: ActiveWindow) -> NextFire:
    """
    Calculate the first occurrence at or after the start of the course.

    Used when a schedule is created. Interval schedules fire first at the
    window start itself; wall-clock schedules at the first configured time
    on or after it.
    """
    start = window.start
    match rule:
        case FixedIntervalHours():
            first = start
        case DailyFixedTime():
            first = _first_slot_at_or_after(start, (rule.time,), ZoneInfo(rule.timezone))
        case CustomTimesPerDay():
            first = _first_slot_at_or_after(start, rule.times, ZoneInfo(rule.timezone))

    return _bounded(first, window)


def _bounded(instant: datetime, window: ActiveWindow) -> NextFire:
    instant = instant.astimezone(timezone.utc)
    if window.end is not None and instant >= window.end:
        return Terminal(COURSE_ENDED)
    return instant


def _next_daily(rule: DailyFixedTime, occurrence: datetime) -> datetime:
    """Same wall-clock time on the following local day."""
    tz = ZoneInfo(rule.timezone)
    local = occurrence.astimezone(tz)
    wall = _wall_time(local)

    # An occurrence pushed forward by a spring-forward gap returns to the
    # configured time instead of drifting by the gap length.
    if wall != rule.time and _is_nonexistent(local.date(), rule.time, tz):
        wall = rule.time

    return _local_instants(local.date() + timedelta(days=1), wall, tz)[0]


def _next_custom(rule: CustomTimesPerDay, occurrence: datetime) -> datetime:
    """Next configured slot later today, else the first slot tomorrow."""
    tz = ZoneInfo(rule.timezone)
    local = occurrence.astimezone(tz)
    wall = _wall_time(local)
    today = local.date()

    for slot in rule.times:
        if slot <= wall:
            continue
        for candidate in _local_instants(today, slot, tz):
            if candidate > occurrence:
                return candidate

    tomorrow = today + timedelta(days=1)
    for slot in rule.times:
        for candidate in _local_instants(tomorrow, slot, tz):
            if candidate > occurrence:
                return candidate

    raise RuntimeError('Could not calculate next custom-times occurrence within 2 days')


def _first_slot_at_or_after(
    start: datetime, slots: tuple[datetime_time, ...], tz: ZoneInfo
) -> datetime:
    local_date = start.astimezone(tz).date()
    for day_offset in range(0, 3):
        for slot in slots:
            for candidate in _local_instants(local_date + timedelta(days=day_offset), slot, tz):
                if candidate >= start:
                    return candidate

    raise RuntimeError('Could not calculate first occurrence within 3 days')


def _wall_time(local: datetime) -> datetime_time:
    return local.time().replace(tzinfo=None, fold=0)


def _is_nonexistent(date_value: date, wall: datetime_time, tz: ZoneInfo) -> bool:
    naive = datetime.combine(date_value, wall)
    for fold in (0, 1):
        candidate = naive.replace(tzinfo=tz, fold=fold)
        if candidate.astimezone(timezone.utc).astimezone(tz).replace(tzinfo=None) == naive:
            return False
    return True


def _local_instants(
    date_value: date, wall: datetime_time, tz: ZoneInfo
) -> list[datetime]:
    """
    Resolve a local wall-clock date/time into real instants, earliest first.

    Ambiguous local times (fall-back) yield both instants.
    Nonexistent local times (spring-forward gap) yield the single instant
    the wall clock reads after the gap, i.e. shifted forward by its length.
    """
    naive = datetime.combine(date_value, wall)
    valid: list[datetime] = []
    for fold in (0, 1):
        candidate = naive.replace(tzinfo=tz, fold=fold)
        roundtrip = candidate.astimezone(timezone.utc).astimezone(tz)
        if roundtrip.replace(tzinfo=None) == naive:
            valid.append(candidate.astimezone(timezone.utc))

    if not valid:
        # fold=0 applies the pre-transition offset, which lands past the gap
        return [naive.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)]

    return sorted(set(valid))
