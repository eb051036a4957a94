"""Pure expansion of a recurrence rule into concrete occurrence start times.

Calendar arithmetic runs on wall-clock dates in the time zone of the series
start, so every occurrence keeps the start's clock time across DST changes.
Occurrences are numbered from the series start regardless of the requested
window, which keeps ``count`` termination window-independent.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterator

from calsync.core.models import RecurrenceRule
from calsync.core.recurrence_rule import until_bound, validate_rule

LOGGER = logging.getLogger(__name__)

MAX_OCCURRENCES_PER_EXPANSION = 5000


def expand(
    rule: RecurrenceRule,
    series_start: datetime,
    window_start: datetime,
    window_end: datetime,
) -> list[datetime]:
    """Return occurrence starts inside ``[window_start, window_end)`` in ascending order.

    Raises RuleValidationError for malformed rules and ValueError for naive datetimes.
    """
    for name, value in (("series_start", series_start), ("window_start", window_start), ("window_end", window_end)):
        if value.tzinfo is None:
            raise ValueError(f"{name} must be timezone-aware")
    validate_rule(rule, series_start)
    if window_end <= window_start:
        return []

    until = until_bound(rule, series_start.tzinfo)
    exceptions = {_utc(value, series_start.tzinfo) for value in rule.exceptions}
    result: list[datetime] = []
    produced = 0
    for period_floor, candidates in _iter_periods(rule, series_start):
        if period_floor >= window_end or (until is not None and period_floor > until):
            return result
        for candidate in candidates:
            if rule.count is not None and produced >= rule.count:
                return result
            if until is not None and candidate > until:
                return result
            if candidate >= window_end:
                return result
            produced += 1
            if candidate < window_start or _utc(candidate) in exceptions:
                continue
            result.append(candidate)
            if len(result) >= MAX_OCCURRENCES_PER_EXPANSION:
                LOGGER.warning(
                    "Expansion truncated at %s occurrences: frequency=%s series_start=%s",
                    MAX_OCCURRENCES_PER_EXPANSION,
                    rule.frequency,
                    series_start.isoformat(),
                )
                return result
    return result


def _iter_periods(rule: RecurrenceRule, series_start: datetime) -> Iterator[tuple[datetime, list[datetime]]]:
    tz = series_start.tzinfo
    clock = series_start.time()
    if rule.frequency == "DAILY":
        periods = _daily_periods(rule, series_start.date())
    elif rule.frequency == "WEEKLY":
        periods = _weekly_periods(rule, series_start.date())
    elif rule.frequency == "MONTHLY":
        periods = _monthly_periods(rule, series_start.date())
    else:
        periods = _yearly_periods(rule, series_start.date())
    for floor_day, days in periods:
        floor = datetime.combine(floor_day, time.min, tzinfo=tz)
        candidates = [_at(day, clock, tz) for day in days]
        yield floor, [value for value in candidates if value >= series_start]


def _stepped_periods(start: date, step: timedelta) -> Iterator[tuple[date, list[date]]]:
    day = start
    while True:
        yield day, [day]
        try:
            day = day + step
        except OverflowError:
            return


def _daily_periods(rule: RecurrenceRule, start: date) -> Iterator[tuple[date, list[date]]]:
    return _stepped_periods(start, timedelta(days=rule.interval))


def _weekly_periods(rule: RecurrenceRule, start: date) -> Iterator[tuple[date, list[date]]]:
    if not rule.by_day:
        yield from _stepped_periods(start, timedelta(weeks=rule.interval))
        return
    week_start = start - timedelta(days=_sunday_index(start))
    step = timedelta(weeks=rule.interval)
    while True:
        try:
            days = [week_start + timedelta(days=offset) for offset in sorted(rule.by_day)]
        except OverflowError:
            return
        yield week_start, days
        try:
            week_start = week_start + step
        except OverflowError:
            return


def _monthly_periods(rule: RecurrenceRule, start: date) -> Iterator[tuple[date, list[date]]]:
    index = start.year * 12 + (start.month - 1)
    while True:
        year, month0 = divmod(index, 12)
        if year > date.max.year:
            return
        yield date(year, month0 + 1, 1), _month_days(rule, year, month0 + 1, start)
        index += rule.interval


def _yearly_periods(rule: RecurrenceRule, start: date) -> Iterator[tuple[date, list[date]]]:
    months = sorted(rule.by_month) if rule.by_month else [start.month]
    year = start.year
    while year <= date.max.year:
        days: list[date] = []
        for month in months:
            days.extend(_month_days(rule, year, month, start))
        yield date(year, 1, 1), days
        year += rule.interval


def _month_days(rule: RecurrenceRule, year: int, month: int, start: date) -> list[date]:
    last_day = calendar.monthrange(year, month)[1]
    if rule.by_month_day:
        numbers = [day for day in sorted(rule.by_month_day) if day <= last_day]
    elif rule.by_day:
        numbers = list(range(1, last_day + 1))
    else:
        numbers = [start.day] if start.day <= last_day else []
    days = [date(year, month, number) for number in numbers]
    if rule.by_day:
        allowed = set(rule.by_day)
        days = [day for day in days if _sunday_index(day) in allowed]
    return days


def _sunday_index(day: date) -> int:
    return (day.weekday() + 1) % 7


def _at(day: date, clock: time, tz: tzinfo | None) -> datetime:
    return datetime.combine(day, clock, tzinfo=tz)


def _utc(value: datetime, tz: tzinfo | None = None) -> datetime:
    """Normalize to UTC; naive values are read in ``tz``, like a naive ``until``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz or timezone.utc)
    return value.astimezone(timezone.utc)
