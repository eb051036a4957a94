"""Recurrence rule validation, parsing and description.

Rules arrive either in the stored JSON shape written by the event editor
(``frequency``, ``interval``, ``byDay``, ``byMonthDay``, ``byMonth``, ``count``,
``until``, ``exceptions``) or as iCalendar RRULE text. Both paths end in
``validate_rule`` so the expander only ever sees well-formed rules.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any, Iterable

from calsync.core.errors import RuleValidationError
from calsync.core.models import FREQUENCIES, RecurrenceRule

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)
# Longest possible length per month (February counted in a leap year).
_MAX_MONTH_DAYS = {month: calendar.monthrange(2024, month)[1] for month in range(1, 13)}

_RRULE_WEEKDAYS = {"SU": 0, "MO": 1, "TU": 2, "WE": 3, "TH": 4, "FR": 5, "SA": 6}
_RRULE_WEEKDAY_CODES = {value: key for key, value in _RRULE_WEEKDAYS.items()}
_RRULE_UNTIL_RE = re.compile(r"^(\d{8})(?:T(\d{6})(Z?))?$")


def validate_rule(rule: RecurrenceRule, series_start: datetime | None = None) -> RecurrenceRule:
    if rule.frequency not in FREQUENCIES:
        raise RuleValidationError(f"unknown frequency: {rule.frequency!r}", field="frequency")
    if not isinstance(rule.interval, int) or rule.interval < 1:
        raise RuleValidationError(f"interval must be >= 1, got {rule.interval!r}", field="interval")
    if rule.count is not None and (not isinstance(rule.count, int) or rule.count < 1):
        raise RuleValidationError(f"count must be >= 1, got {rule.count!r}", field="count")
    _check_members(rule.by_day, 0, 6, "by_day")
    _check_members(rule.by_month, 1, 12, "by_month")
    for value in rule.by_month_day:
        if isinstance(value, int) and value < 0:
            raise RuleValidationError(
                f"negative by_month_day is not supported: {value}",
                field="by_month_day",
            )
    _check_members(rule.by_month_day, 1, 31, "by_month_day")
    if rule.frequency == "YEARLY" and rule.by_month_day:
        months = rule.by_month
        if not months and series_start is not None:
            months = (series_start.month,)
        if months and not any(
            day <= _MAX_MONTH_DAYS[month] for month in months for day in rule.by_month_day
        ):
            raise RuleValidationError(
                "by_month_day never falls inside by_month",
                field="by_month_day",
            )
    return rule


def _check_members(values: Iterable[int], low: int, high: int, field: str) -> None:
    for value in values:
        if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
            raise RuleValidationError(f"{field} value out of range {low}..{high}: {value!r}", field=field)


def until_bound(rule: RecurrenceRule, tz: tzinfo | None) -> datetime | None:
    """Return ``rule.until`` as an aware datetime; a bare date covers the whole day."""
    until = rule.until
    if until is None:
        return None
    if isinstance(until, datetime):
        if until.tzinfo is None:
            return until.replace(tzinfo=tz or timezone.utc)
        return until
    return datetime.combine(until, time.max, tzinfo=tz or timezone.utc)


def rule_from_dict(raw: dict[str, Any], *, validate: bool = True) -> RecurrenceRule:
    if not isinstance(raw, dict):
        raise RuleValidationError("rule payload must be an object")
    frequency = raw.get("frequency")
    if isinstance(frequency, str):
        frequency = frequency.strip().upper()
    interval = raw.get("interval")
    rule = RecurrenceRule(
        frequency=frequency,
        interval=1 if interval is None else _as_int(interval, "interval"),
        by_day=_int_tuple(_pick(raw, "byDay", "by_day"), "by_day"),
        by_month_day=_int_tuple(_pick(raw, "byMonthDay", "by_month_day"), "by_month_day"),
        by_month=_int_tuple(_pick(raw, "byMonth", "by_month"), "by_month"),
        count=None if raw.get("count") is None else _as_int(raw.get("count"), "count"),
        until=_parse_until(raw.get("until")),
        exceptions=frozenset(_parse_timestamp(item, "exceptions") for item in raw.get("exceptions") or []),
    )
    return validate_rule(rule) if validate else rule


def rule_to_dict(rule: RecurrenceRule) -> dict[str, Any]:
    until: str | None = None
    if rule.until is not None:
        until = rule.until.isoformat()
    return {
        "frequency": rule.frequency,
        "interval": rule.interval,
        "byDay": list(rule.by_day),
        "byMonthDay": list(rule.by_month_day),
        "byMonth": list(rule.by_month),
        "count": rule.count,
        "until": until,
        "exceptions": sorted(value.isoformat() for value in rule.exceptions),
    }


def rule_from_rrule(text: str, exceptions: Iterable[datetime] = ()) -> RecurrenceRule:
    """Parse ``FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10`` style text."""
    parts = _parse_rrule_parts(text)
    if "FREQ" not in parts:
        raise RuleValidationError("RRULE is missing FREQ", field="frequency")
    by_day: list[int] = []
    for code in _split_list(parts.get("BYDAY")):
        if code not in _RRULE_WEEKDAYS:
            raise RuleValidationError(f"unsupported BYDAY value: {code}", field="by_day")
        by_day.append(_RRULE_WEEKDAYS[code])
    until: datetime | date | None = None
    if "UNTIL" in parts:
        until = _parse_rrule_until(parts["UNTIL"])
    rule = RecurrenceRule(
        frequency=parts["FREQ"].upper(),
        interval=_as_int(parts.get("INTERVAL", "1"), "interval"),
        by_day=tuple(sorted(set(by_day))),
        by_month_day=_int_tuple(_split_list(parts.get("BYMONTHDAY")), "by_month_day"),
        by_month=_int_tuple(_split_list(parts.get("BYMONTH")), "by_month"),
        count=_as_int(parts["COUNT"], "count") if "COUNT" in parts else None,
        until=until,
        exceptions=frozenset(exceptions),
    )
    return validate_rule(rule)


def rule_to_rrule(rule: RecurrenceRule) -> str:
    parts: dict[str, str] = {"FREQ": rule.frequency}
    if rule.interval != 1:
        parts["INTERVAL"] = str(rule.interval)
    if rule.by_day:
        parts["BYDAY"] = ",".join(_RRULE_WEEKDAY_CODES[day] for day in sorted(rule.by_day))
    if rule.by_month_day:
        parts["BYMONTHDAY"] = ",".join(str(day) for day in sorted(rule.by_month_day))
    if rule.by_month:
        parts["BYMONTH"] = ",".join(str(month) for month in sorted(rule.by_month))
    if rule.count is not None:
        parts["COUNT"] = str(rule.count)
    if isinstance(rule.until, datetime):
        value = rule.until if rule.until.tzinfo is None else rule.until.astimezone(timezone.utc)
        parts["UNTIL"] = value.strftime("%Y%m%dT%H%M%S") + ("Z" if rule.until.tzinfo else "")
    elif rule.until is not None:
        parts["UNTIL"] = rule.until.strftime("%Y%m%d")
    return ";".join(f"{key}={value}" for key, value in parts.items())


def describe_rule(rule: RecurrenceRule | None) -> str:
    if rule is None:
        return "Does not repeat"
    interval = rule.interval or 1
    if rule.frequency == "DAILY":
        description = "Daily" if interval == 1 else f"Every {interval} days"
    elif rule.frequency == "WEEKLY":
        description = "Weekly" if interval == 1 else f"Every {interval} weeks"
        if rule.by_day:
            description += " on " + ", ".join(DAY_NAMES[day] for day in sorted(rule.by_day))
    elif rule.frequency == "MONTHLY":
        description = "Monthly" if interval == 1 else f"Every {interval} months"
        if rule.by_month_day:
            description += " on day " + ", ".join(str(day) for day in sorted(rule.by_month_day))
    elif rule.frequency == "YEARLY":
        description = "Yearly" if interval == 1 else f"Every {interval} years"
        if rule.by_month:
            description += " in " + ", ".join(MONTH_NAMES[month - 1] for month in sorted(rule.by_month))
    else:
        description = ""

    if rule.count:
        description += f", {rule.count} times"
    elif rule.until is not None:
        description += f", until {rule.until.strftime('%Y-%m-%d')}"
    return description


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise RuleValidationError(f"{field} must be an integer", field=field)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise RuleValidationError(f"{field} must be an integer, got {value!r}", field=field) from exc


def _int_tuple(values: Any, field: str) -> tuple[int, ...]:
    if values is None:
        return ()
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        raise RuleValidationError(f"{field} must be a list", field=field)
    return tuple(sorted({_as_int(value, field) for value in values}))


def _parse_timestamp(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise RuleValidationError(f"{field} has an invalid timestamp: {value!r}", field=field) from exc
    else:
        raise RuleValidationError(f"{field} has an invalid timestamp: {value!r}", field=field)
    # Naive values are resolved in the series zone at expansion time.
    return parsed


def _parse_until(value: Any) -> datetime | date | None:
    if value is None or value == "":
        return None
    if isinstance(value, (datetime, date)):
        return value
    if isinstance(value, str) and len(value) == 10:
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise RuleValidationError(f"until has an invalid date: {value!r}", field="until") from exc
    if isinstance(value, str):
        # Naive text keeps its wall-clock meaning; until_bound applies the series zone.
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise RuleValidationError(f"until has an invalid timestamp: {value!r}", field="until") from exc
    raise RuleValidationError(f"until has an invalid timestamp: {value!r}", field="until")


def _parse_rrule_parts(text: str) -> dict[str, str]:
    if not isinstance(text, str) or not text.strip():
        raise RuleValidationError("RRULE text is empty")
    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:") :]
    parts: dict[str, str] = {}
    for segment in body.split(";"):
        if "=" not in segment:
            continue
        key, value = segment.split("=", 1)
        key = key.strip().upper()
        if key and value.strip():
            parts[key] = value.strip().upper()
    return parts


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_rrule_until(value: str) -> datetime | date:
    match = _RRULE_UNTIL_RE.match(value)
    if not match:
        raise RuleValidationError(f"invalid UNTIL value: {value}", field="until")
    day_part, time_part, utc_flag = match.groups()
    if time_part is None:
        return datetime.strptime(day_part, "%Y%m%d").date()
    parsed = datetime.strptime(day_part + time_part, "%Y%m%d%H%M%S")
    if utc_flag:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
