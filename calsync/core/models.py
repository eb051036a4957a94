from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Literal

Frequency = Literal["DAILY", "WEEKLY", "MONTHLY", "YEARLY"]
SeriesStatus = Literal["ACTIVE", "CANCELLED"]
OutcomeStatus = Literal["created", "skipped", "error"]
ErrorType = Literal["rule_validation", "storage", "unexpected"]

FREQUENCIES: tuple[str, ...] = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")


@dataclass(frozen=True)
class RecurrenceRule:
    """Repeating pattern of a series. Weekday indices: 0=Sunday .. 6=Saturday."""

    frequency: Frequency
    interval: int = 1
    by_day: tuple[int, ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_month: tuple[int, ...] = ()
    count: int | None = None
    until: datetime | date | None = None
    exceptions: frozenset[datetime] = frozenset()

    @property
    def is_bounded(self) -> bool:
        return self.count is not None or self.until is not None


@dataclass(frozen=True)
class Attendee:
    user_id: str | None = None
    team_id: str | None = None
    is_organizer: bool = False


@dataclass(frozen=True)
class Reminder:
    user_id: str
    minutes_before: int


@dataclass(frozen=True)
class InstanceAttendee:
    user_id: str | None
    team_id: str | None
    is_organizer: bool
    response_status: str = "PENDING"


@dataclass(frozen=True)
class Series:
    """Template event owning exactly one recurrence rule."""

    id: str
    title: str
    start_time: datetime
    end_time: datetime
    rule: RecurrenceRule | None
    description: str | None = None
    location: str | None = None
    color: str | None = None
    category_id: str | None = None
    visibility: str = "PUBLIC"
    all_day: bool = False
    creator_id: str | None = None
    status: SeriesStatus = "ACTIVE"
    metadata: dict[str, Any] = field(default_factory=dict)
    attendees: tuple[Attendee, ...] = ()
    reminders: tuple[Reminder, ...] = ()

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class Instance:
    """Materialized occurrence; linked to its series by id only."""

    id: str
    parent_series_id: str
    start_time: datetime
    end_time: datetime
    title: str
    description: str | None
    location: str | None
    color: str | None
    category_id: str | None
    visibility: str
    all_day: bool
    creator_id: str | None
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)
    attendees: tuple[InstanceAttendee, ...] = ()
    reminders: tuple[Reminder, ...] = ()


@dataclass(frozen=True)
class SeriesOutcome:
    series_id: str
    status: OutcomeStatus
    created: int = 0
    skipped: int = 0
    error: str | None = None
    error_type: ErrorType | None = None

    @property
    def ok(self) -> bool:
        return self.status != "error"


@dataclass
class RunSummary:
    run_id: str
    window_start: datetime
    window_end: datetime
    started_at: datetime
    total_series: int = 0
    total_created: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    not_started: int = 0
    duration_ms: float = 0.0
    outcomes: list[SeriesOutcome] = field(default_factory=list)

    def add(self, outcome: SeriesOutcome) -> None:
        self.outcomes.append(outcome)
        self.total_created += outcome.created
        self.total_skipped += outcome.skipped
        if outcome.status == "error":
            self.total_errors += 1

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "total_series": self.total_series,
            "total_created": self.total_created,
            "total_skipped": self.total_skipped,
            "total_errors": self.total_errors,
            "not_started": self.not_started,
        }
