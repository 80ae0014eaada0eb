"""
bloom.engine.calendar — Activity-Day Math
==========================================

Pure date helpers shared by schedules, quotas, completion rates and the
daily leaderboard.  An *activity day* is a date inside an event's
``[start_date, end_date]`` range that is not a Saturday/Sunday when the
event rests on weekends.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, time, timedelta
from typing import Protocol


class EventWindow(Protocol):
    start_date: date
    end_date: date
    weekend_rest: bool


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def iter_activity_days(start: date, end: date, weekend_rest: bool) -> Iterator[date]:
    """Yield every activity day from *start* to *end* inclusive."""
    day = start
    while day <= end:
        if not (weekend_rest and is_weekend(day)):
            yield day
        day += timedelta(days=1)


def activity_days(event: EventWindow) -> list[date]:
    return list(iter_activity_days(event.start_date, event.end_date, event.weekend_rest))


def required_reading_days(event: EventWindow) -> int:
    """Number of days a participant is expected to check in."""
    return sum(1 for _ in iter_activity_days(event.start_date, event.end_date, event.weekend_rest))


def is_activity_day(event: EventWindow, day: date) -> bool:
    if day < event.start_date or day > event.end_date:
        return False
    return not (event.weekend_rest and is_weekend(day))


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """``[start, end)`` datetimes covering *day*."""
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def event_bounds(event: EventWindow) -> tuple[datetime, datetime]:
    """``[start, end)`` datetimes covering the whole event range."""
    return day_bounds(event.start_date)[0], day_bounds(event.end_date)[1]


def add_years(day: date, years: int) -> date:
    """Same calendar day *years* later; Feb 29 falls back to Feb 28."""
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)
