from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from calsync.core.errors import RuleValidationError
from calsync.core.models import RecurrenceRule
from calsync.core.recurrence_rule import rule_from_dict
from calsync.core.rule_expander import expand

UTC = timezone.utc


def _dt(year: int, month: int, day: int, hour: int = 9, minute: int = 0, tz=UTC) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=tz)


def test_weekly_mon_wed_fri_single_week() -> None:
    rule = RecurrenceRule(frequency="WEEKLY", by_day=(1, 3, 5))
    start = _dt(2026, 1, 5)  # Monday

    result = expand(rule, start, _dt(2026, 1, 5, 0), _dt(2026, 1, 12, 0))

    assert result == [_dt(2026, 1, 5), _dt(2026, 1, 7), _dt(2026, 1, 9)]


def test_monthly_day_31_skips_short_months() -> None:
    rule = RecurrenceRule(frequency="MONTHLY", by_month_day=(31,))
    start = _dt(2026, 1, 31, 10)

    result = expand(rule, start, _dt(2026, 1, 1, 0), _dt(2026, 4, 1, 0))

    assert result == [_dt(2026, 1, 31, 10), _dt(2026, 3, 31, 10)]


def test_daily_count_caps_occurrences() -> None:
    rule = RecurrenceRule(frequency="DAILY", count=5)
    start = _dt(2026, 3, 1, 8)

    result = expand(rule, start, start, start + timedelta(days=10))

    assert result == [start + timedelta(days=offset) for offset in range(5)]


def test_exception_removed_but_still_counted() -> None:
    start = _dt(2026, 3, 1, 8)
    third = start + timedelta(days=2)
    rule = RecurrenceRule(frequency="DAILY", count=5, exceptions=frozenset({third}))

    result = expand(rule, start, start, start + timedelta(days=10))

    assert third not in result
    assert result == [
        start,
        start + timedelta(days=1),
        start + timedelta(days=3),
        start + timedelta(days=4),
    ]


def test_count_is_measured_from_series_start_not_window() -> None:
    rule = RecurrenceRule(frequency="DAILY", count=5)
    start = _dt(2026, 3, 1, 8)

    result = expand(rule, start, _dt(2026, 3, 4, 0), _dt(2026, 4, 1, 0))

    assert result == [_dt(2026, 3, 4, 8), _dt(2026, 3, 5, 8)]


def test_count_exhausted_before_window_yields_nothing() -> None:
    rule = RecurrenceRule(frequency="DAILY", count=3)
    start = _dt(2026, 3, 1, 8)

    assert expand(rule, start, _dt(2026, 3, 10, 0), _dt(2026, 4, 1, 0)) == []


def test_until_date_is_inclusive_for_whole_day() -> None:
    rule = RecurrenceRule(frequency="DAILY", until=date(2026, 3, 3))
    start = _dt(2026, 3, 1, 8)

    result = expand(rule, start, start, _dt(2026, 4, 1, 0))

    assert result == [_dt(2026, 3, 1, 8), _dt(2026, 3, 2, 8), _dt(2026, 3, 3, 8)]


def test_until_timestamp_boundary() -> None:
    start = _dt(2026, 3, 1, 8)
    inclusive = RecurrenceRule(frequency="DAILY", until=_dt(2026, 3, 3, 8))
    exclusive = RecurrenceRule(frequency="DAILY", until=_dt(2026, 3, 3, 7, 59))

    assert expand(inclusive, start, start, _dt(2026, 4, 1, 0))[-1] == _dt(2026, 3, 3, 8)
    assert expand(exclusive, start, start, _dt(2026, 4, 1, 0))[-1] == _dt(2026, 3, 2, 8)


def test_weekly_interval_two_on_tuesdays() -> None:
    rule = RecurrenceRule(frequency="WEEKLY", interval=2, by_day=(2,))
    start = _dt(2026, 1, 6)  # Tuesday

    result = expand(rule, start, start, _dt(2026, 2, 10, 0))

    assert result == [_dt(2026, 1, 6), _dt(2026, 1, 20), _dt(2026, 2, 3)]


def test_weekly_days_before_start_are_not_occurrences() -> None:
    rule = RecurrenceRule(frequency="WEEKLY", by_day=(1, 3), count=3)
    start = _dt(2026, 1, 7)  # Wednesday

    result = expand(rule, start, _dt(2026, 1, 1, 0), _dt(2026, 3, 1, 0))

    assert result == [_dt(2026, 1, 7), _dt(2026, 1, 12), _dt(2026, 1, 14)]


def test_weekly_without_by_day_steps_seven_days() -> None:
    rule = RecurrenceRule(frequency="WEEKLY")
    start = _dt(2026, 1, 5)

    result = expand(rule, start, start, _dt(2026, 1, 27, 0))

    assert result == [_dt(2026, 1, 5), _dt(2026, 1, 12), _dt(2026, 1, 19), _dt(2026, 1, 26)]


def test_monthly_by_weekday_only_uses_every_matching_day() -> None:
    rule = RecurrenceRule(frequency="MONTHLY", by_day=(1,))
    start = _dt(2026, 1, 5)

    result = expand(rule, start, _dt(2026, 1, 1, 0), _dt(2026, 2, 1, 0))

    assert [value.day for value in result] == [5, 12, 19, 26]


def test_monthly_interval_defaults_to_start_day() -> None:
    rule = RecurrenceRule(frequency="MONTHLY", interval=2)
    start = _dt(2026, 1, 15)

    result = expand(rule, start, start, _dt(2026, 7, 1, 0))

    assert result == [_dt(2026, 1, 15), _dt(2026, 3, 15), _dt(2026, 5, 15)]


def test_yearly_leap_day_only_in_leap_years() -> None:
    rule = RecurrenceRule(frequency="YEARLY")
    start = _dt(2024, 2, 29, 12)

    result = expand(rule, start, _dt(2024, 1, 1, 0), _dt(2033, 1, 1, 0))

    assert result == [_dt(2024, 2, 29, 12), _dt(2028, 2, 29, 12), _dt(2032, 2, 29, 12)]


def test_yearly_by_month_and_month_day() -> None:
    rule = RecurrenceRule(frequency="YEARLY", by_month=(3, 9), by_month_day=(15,))
    start = _dt(2026, 3, 15)

    result = expand(rule, start, start, _dt(2027, 6, 1, 0))

    assert result == [_dt(2026, 3, 15), _dt(2026, 9, 15), _dt(2027, 3, 15)]


def test_rule_that_never_matches_terminates_at_window_end() -> None:
    rule = RecurrenceRule(frequency="YEARLY", interval=4, by_month=(2,), by_month_day=(29,))
    start = _dt(2025, 2, 28)

    assert expand(rule, start, start, _dt(2060, 1, 1, 0)) == []


def test_wall_clock_kept_across_dst_change() -> None:
    tz = ZoneInfo("Europe/Amsterdam")
    rule = RecurrenceRule(frequency="DAILY")
    start = _dt(2026, 3, 28, 9, tz=tz)

    result = expand(rule, start, start, _dt(2026, 3, 31, 0, tz=tz))

    assert [value.hour for value in result] == [9, 9, 9]
    assert result[0].utcoffset() == timedelta(hours=1)
    assert result[1].utcoffset() == timedelta(hours=2)


def test_exception_matches_same_instant_in_other_zone() -> None:
    tz = ZoneInfo("Europe/Amsterdam")
    start = _dt(2026, 1, 8, 9, tz=tz)
    rule = RecurrenceRule(frequency="DAILY", exceptions=frozenset({_dt(2026, 1, 10, 8)}))

    result = expand(rule, start, start, _dt(2026, 1, 12, 0, tz=tz))

    assert [value.day for value in result] == [8, 9, 11]


def test_expand_is_deterministic_and_strictly_increasing() -> None:
    rule = RecurrenceRule(frequency="MONTHLY", by_month_day=(1, 15, 31), by_day=(1, 2, 3, 4, 5))
    start = _dt(2026, 1, 1)
    window = (_dt(2026, 1, 1, 0), _dt(2028, 1, 1, 0))

    first = expand(rule, start, *window)
    second = expand(rule, start, *window)

    assert first == second
    assert first
    assert all(earlier < later for earlier, later in zip(first, first[1:]))
    assert all(window[0] <= value < window[1] for value in first)


def test_empty_or_inverted_window() -> None:
    rule = RecurrenceRule(frequency="DAILY")
    start = _dt(2026, 1, 1)

    assert expand(rule, start, start, start) == []
    assert expand(rule, start, start + timedelta(days=2), start) == []


def test_window_end_is_exclusive() -> None:
    rule = RecurrenceRule(frequency="DAILY")
    start = _dt(2026, 1, 1)

    assert expand(rule, start, start, _dt(2026, 1, 3)) == [_dt(2026, 1, 1), _dt(2026, 1, 2)]


def test_invalid_rule_raises() -> None:
    with pytest.raises(RuleValidationError):
        expand(RecurrenceRule(frequency="DAILY", interval=0), _dt(2026, 1, 1), _dt(2026, 1, 1), _dt(2026, 2, 1))


def test_yearly_start_month_never_holding_day_raises() -> None:
    rule = RecurrenceRule(frequency="YEARLY", by_month_day=(30,))

    with pytest.raises(RuleValidationError):
        expand(rule, _dt(2026, 2, 1), _dt(2026, 1, 1), _dt(2030, 1, 1))


def test_naive_datetimes_rejected() -> None:
    rule = RecurrenceRule(frequency="DAILY")

    with pytest.raises(ValueError):
        expand(rule, datetime(2026, 1, 1, 9), _dt(2026, 1, 1), _dt(2026, 2, 1))


def test_exception_excluded_in_ambiguous_fall_back_hour() -> None:
    tz = ZoneInfo("America/New_York")
    rule = rule_from_dict({"frequency": "DAILY", "exceptions": ["2026-11-01T05:30:00Z"]})
    start = _dt(2026, 10, 30, 1, 30, tz=tz)

    result = expand(rule, start, start, _dt(2026, 11, 3, 0, tz=tz))

    assert [value.day for value in result] == [30, 31, 2]


def test_naive_exception_is_read_in_series_zone() -> None:
    tz = ZoneInfo("Europe/Amsterdam")
    start = _dt(2026, 1, 5, 9, tz=tz)
    rule = RecurrenceRule(frequency="DAILY", exceptions=frozenset({datetime(2026, 1, 6, 9, 0)}))

    result = expand(rule, start, start, _dt(2026, 1, 8, 0, tz=tz))

    assert result == [_dt(2026, 1, 5, 9, tz=tz), _dt(2026, 1, 7, 9, tz=tz)]


def test_naive_exception_text_from_stored_rule() -> None:
    rule = rule_from_dict({"frequency": "DAILY", "exceptions": ["2026-01-06T09:00:00"]})
    start = _dt(2026, 1, 5)

    assert _dt(2026, 1, 6) not in expand(rule, start, start, _dt(2026, 1, 8, 0))
