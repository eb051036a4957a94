from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar
from zoneinfo import ZoneInfo

from calsync.core.errors import RuleValidationError, SeriesNotFoundError, StorageTransientError
from calsync.core.models import Attendee, Instance, InstanceAttendee, Reminder, Series
from calsync.core.recurrence_rule import rule_from_dict, rule_to_dict

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_UTC_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_utc_key(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_UTC_FORMAT)


def from_utc_key(value: str) -> datetime:
    return datetime.strptime(value, _UTC_FORMAT).replace(tzinfo=timezone.utc)


class EventStorage:
    """SQLite store for recurring series and their materialized instances."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = db_path
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(db_path, check_same_thread=False, timeout=5.0)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connection:
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS series (
                    id TEXT PRIMARY KEY,
                    start_local TEXT NOT NULL,
                    end_local TEXT NOT NULL,
                    timezone TEXT,
                    status TEXT NOT NULL,
                    rule TEXT,
                    payload TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS instances (
                    id TEXT PRIMARY KEY,
                    parent_series_id TEXT NOT NULL,
                    start_utc TEXT NOT NULL,
                    end_utc TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS instances_series_start
                    ON instances (parent_series_id, start_utc);
                CREATE TABLE IF NOT EXISTS instance_attendees (
                    instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
                    user_id TEXT,
                    team_id TEXT,
                    is_organizer INTEGER NOT NULL,
                    response_status TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS instance_reminders (
                    instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    minutes_before INTEGER NOT NULL
                );
                """
            )

    def save_series(self, series: Series) -> None:
        payload = {
            "title": series.title,
            "description": series.description,
            "location": series.location,
            "color": series.color,
            "category_id": series.category_id,
            "visibility": series.visibility,
            "all_day": series.all_day,
            "creator_id": series.creator_id,
            "metadata": series.metadata,
            "attendees": [asdict(item) for item in series.attendees],
            "reminders": [asdict(item) for item in series.reminders],
        }
        tz = series.start_time.tzinfo
        self._run(
            lambda: self._execute_write(
                """
                INSERT INTO series (id, start_local, end_local, timezone, status, rule, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    start_local = excluded.start_local,
                    end_local = excluded.end_local,
                    timezone = excluded.timezone,
                    status = excluded.status,
                    rule = excluded.rule,
                    payload = excluded.payload
                """,
                (
                    series.id,
                    series.start_time.isoformat(),
                    series.end_time.isoformat(),
                    tz.key if isinstance(tz, ZoneInfo) else None,
                    series.status,
                    json.dumps(rule_to_dict(series.rule)) if series.rule is not None else None,
                    json.dumps(payload, ensure_ascii=False),
                ),
            ),
            "save_series",
        )

    def get_series(self, series_id: str) -> Series:
        row = self._run(
            lambda: self._connection.execute("SELECT * FROM series WHERE id = ?", (series_id,)).fetchone(),
            "get_series",
        )
        if row is None:
            raise SeriesNotFoundError(series_id)
        return _series_from_row(row)

    def cancel_series(self, series_id: str) -> None:
        changed = self._run(
            lambda: self._execute_write("UPDATE series SET status = 'CANCELLED' WHERE id = ?", (series_id,)),
            "cancel_series",
        )
        if not changed:
            raise SeriesNotFoundError(series_id)

    def list_active_recurring_series(self) -> list[Series]:
        rows = self._run(
            lambda: self._connection.execute(
                "SELECT * FROM series WHERE rule IS NOT NULL AND status != 'CANCELLED' ORDER BY id"
            ).fetchall(),
            "list_active_recurring_series",
        )
        result: list[Series] = []
        for row in rows:
            try:
                result.append(_series_from_row(row))
            except (RuleValidationError, ValueError, KeyError, TypeError):
                LOGGER.exception("Unreadable series row skipped: series_id=%s", row["id"])
        return result

    def list_instance_start_times(
        self,
        series_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> set[datetime]:
        rows = self._run(
            lambda: self._connection.execute(
                """
                SELECT start_utc FROM instances
                WHERE parent_series_id = ? AND start_utc >= ? AND start_utc < ?
                """,
                (series_id, to_utc_key(window_start), to_utc_key(window_end)),
            ).fetchall(),
            "list_instance_start_times",
        )
        return {from_utc_key(row["start_utc"]) for row in rows}

    def bulk_insert_instances(self, series_id: str, instances: list[Instance]) -> int:
        if not instances:
            return 0
        for instance in instances:
            if instance.parent_series_id != series_id:
                raise ValueError(f"instance {instance.id} does not belong to series {series_id}")
        return self._run(lambda: self._insert_instances(instances), "bulk_insert_instances")

    def list_instances(self, series_id: str) -> list[Instance]:
        def _load() -> list[Instance]:
            rows = self._connection.execute(
                "SELECT * FROM instances WHERE parent_series_id = ? ORDER BY start_utc",
                (series_id,),
            ).fetchall()
            result: list[Instance] = []
            for row in rows:
                attendees = self._connection.execute(
                    "SELECT * FROM instance_attendees WHERE instance_id = ? ORDER BY rowid",
                    (row["id"],),
                ).fetchall()
                reminders = self._connection.execute(
                    "SELECT * FROM instance_reminders WHERE instance_id = ? ORDER BY rowid",
                    (row["id"],),
                ).fetchall()
                result.append(_instance_from_rows(row, attendees, reminders))
            return result

        return self._run(_load, "list_instances")

    def close(self) -> None:
        try:
            self._connection.close()
        except sqlite3.Error:
            LOGGER.exception("Failed to close database connection")

    def _insert_instances(self, instances: list[Instance]) -> int:
        created_at = to_utc_key(datetime.now(timezone.utc))
        inserted = 0
        with self._connection:
            for instance in instances:
                cursor = self._connection.execute(
                    """
                    INSERT OR IGNORE INTO instances (
                        id, parent_series_id, start_utc, end_utc, status, payload, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        instance.id,
                        instance.parent_series_id,
                        to_utc_key(instance.start_time),
                        to_utc_key(instance.end_time),
                        instance.status,
                        json.dumps(_instance_payload(instance), ensure_ascii=False),
                        created_at,
                    ),
                )
                if cursor.rowcount != 1:
                    continue
                inserted += 1
                self._connection.executemany(
                    """
                    INSERT INTO instance_attendees (
                        instance_id, user_id, team_id, is_organizer, response_status
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (instance.id, item.user_id, item.team_id, int(item.is_organizer), item.response_status)
                        for item in instance.attendees
                    ],
                )
                self._connection.executemany(
                    "INSERT INTO instance_reminders (instance_id, user_id, minutes_before) VALUES (?, ?, ?)",
                    [(instance.id, item.user_id, item.minutes_before) for item in instance.reminders],
                )
        return inserted

    def _execute_write(self, sql: str, params: tuple[Any, ...]) -> int:
        with self._connection:
            cursor = self._connection.execute(sql, params)
        return cursor.rowcount

    def _run(self, func: Callable[[], T], name: str) -> T:
        with self._lock:
            try:
                return func()
            except sqlite3.OperationalError as exc:
                LOGGER.warning("Storage operation failed: op=%s error=%s", name, exc)
                raise StorageTransientError(f"{name}: {exc}") from exc


def _instance_payload(instance: Instance) -> dict[str, Any]:
    return {
        "title": instance.title,
        "description": instance.description,
        "location": instance.location,
        "color": instance.color,
        "category_id": instance.category_id,
        "visibility": instance.visibility,
        "all_day": instance.all_day,
        "creator_id": instance.creator_id,
        "metadata": instance.metadata,
    }


def _parse_local(value: str, tz_name: str | None) -> datetime:
    parsed = datetime.fromisoformat(value)
    if tz_name:
        return parsed.astimezone(ZoneInfo(tz_name))
    return parsed


def _series_from_row(row: sqlite3.Row) -> Series:
    payload = json.loads(row["payload"])
    rule = rule_from_dict(json.loads(row["rule"]), validate=False) if row["rule"] else None
    return Series(
        id=row["id"],
        title=payload.get("title") or "",
        start_time=_parse_local(row["start_local"], row["timezone"]),
        end_time=_parse_local(row["end_local"], row["timezone"]),
        rule=rule,
        description=payload.get("description"),
        location=payload.get("location"),
        color=payload.get("color"),
        category_id=payload.get("category_id"),
        visibility=payload.get("visibility") or "PUBLIC",
        all_day=bool(payload.get("all_day")),
        creator_id=payload.get("creator_id"),
        status=row["status"],
        metadata=payload.get("metadata") or {},
        attendees=tuple(Attendee(**item) for item in payload.get("attendees") or []),
        reminders=tuple(Reminder(**item) for item in payload.get("reminders") or []),
    )


def _instance_from_rows(
    row: sqlite3.Row,
    attendees: list[sqlite3.Row],
    reminders: list[sqlite3.Row],
) -> Instance:
    payload = json.loads(row["payload"])
    return Instance(
        id=row["id"],
        parent_series_id=row["parent_series_id"],
        start_time=from_utc_key(row["start_utc"]),
        end_time=from_utc_key(row["end_utc"]),
        title=payload.get("title") or "",
        description=payload.get("description"),
        location=payload.get("location"),
        color=payload.get("color"),
        category_id=payload.get("category_id"),
        visibility=payload.get("visibility") or "PUBLIC",
        all_day=bool(payload.get("all_day")),
        creator_id=payload.get("creator_id"),
        status=row["status"],
        metadata=payload.get("metadata") or {},
        attendees=tuple(
            InstanceAttendee(
                user_id=item["user_id"],
                team_id=item["team_id"],
                is_organizer=bool(item["is_organizer"]),
                response_status=item["response_status"],
            )
            for item in attendees
        ),
        reminders=tuple(Reminder(user_id=item["user_id"], minutes_before=item["minutes_before"]) for item in reminders),
    )
