from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, TypeVar

from calsync.core.errors import RuleValidationError, StorageTransientError
from calsync.core.instance_store import SeriesInstanceStore
from calsync.core.models import Instance, InstanceAttendee, Series, SeriesOutcome
from calsync.core.rule_expander import expand
from calsync.infra.resilience import RetryPolicy, is_storage_transient, retry_sync
from calsync.infra.run_context import RunContext, elapsed_ms, log_error, log_event

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_COMPONENT = "materializer"


def build_instance(series: Series, start_time: datetime, instance_id: str) -> Instance:
    """Snapshot the series template onto one occurrence starting at ``start_time``."""
    return Instance(
        id=instance_id,
        parent_series_id=series.id,
        start_time=start_time,
        end_time=start_time + series.duration,
        title=series.title,
        description=series.description,
        location=series.location,
        color=series.color,
        category_id=series.category_id,
        visibility=series.visibility,
        all_day=series.all_day,
        creator_id=series.creator_id,
        status=series.status,
        metadata=dict(series.metadata),
        attendees=tuple(
            InstanceAttendee(
                user_id=attendee.user_id,
                team_id=attendee.team_id,
                is_organizer=attendee.is_organizer,
                response_status="PENDING",
            )
            for attendee in series.attendees
        ),
        reminders=tuple(series.reminders),
    )


class InstanceMaterializer:
    """Keeps the persisted instances of one series in sync with its rule.

    Only inserts: instances already stored for a ``(series, start)`` pair are
    left untouched, so re-processing a window is a no-op.
    """

    def __init__(
        self,
        store: SeriesInstanceStore,
        *,
        retry_policy: RetryPolicy | None = None,
        id_factory: Callable[[], str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._retry_policy = retry_policy or RetryPolicy()
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._sleep = sleep

    def materialize(
        self,
        series: Series,
        window_start: datetime,
        window_end: datetime,
        *,
        run_context: RunContext | None = None,
    ) -> SeriesOutcome:
        start_time = time.monotonic()
        try:
            outcome = self._materialize(series, window_start, window_end, run_context)
        except RuleValidationError as exc:
            return self._failed(series, exc, "rule_validation", run_context)
        except StorageTransientError as exc:
            return self._failed(series, exc, "storage", run_context)
        except Exception as exc:
            return self._failed(series, exc, "unexpected", run_context)
        log_event(
            LOGGER,
            run_context,
            component=_COMPONENT,
            event="materialize.done",
            duration_ms=elapsed_ms(start_time),
            series_id=series.id,
            outcome=outcome.status,
            created=outcome.created,
            skipped=outcome.skipped,
        )
        return outcome

    def _materialize(
        self,
        series: Series,
        window_start: datetime,
        window_end: datetime,
        run_context: RunContext | None,
    ) -> SeriesOutcome:
        if series.rule is None:
            return SeriesOutcome(series_id=series.id, status="skipped")
        candidates = expand(series.rule, series.start_time, window_start, window_end)
        if not candidates:
            return SeriesOutcome(series_id=series.id, status="skipped")

        existing = self._with_retry(
            lambda: self._store.list_instance_start_times(series.id, window_start, window_end),
            "list_instance_start_times",
            run_context,
        )
        # Compare instants in UTC; == across zones is False for ambiguous wall times.
        existing_utc = {value.astimezone(timezone.utc) for value in existing}
        missing = [candidate for candidate in candidates if candidate.astimezone(timezone.utc) not in existing_utc]
        if not missing:
            return SeriesOutcome(series_id=series.id, status="skipped", skipped=len(candidates))

        instances = [build_instance(series, candidate, self._id_factory()) for candidate in missing]
        created = self._with_retry(
            lambda: self._store.bulk_insert_instances(series.id, instances),
            "bulk_insert_instances",
            run_context,
        )
        return SeriesOutcome(
            series_id=series.id,
            status="created" if created else "skipped",
            created=created,
            skipped=len(candidates) - created,
        )

    def _with_retry(self, func: Callable[[], T], name: str, run_context: RunContext | None) -> T:
        try:
            return retry_sync(
                func,
                policy=self._retry_policy,
                logger=LOGGER,
                run_context=run_context,
                component=_COMPONENT,
                name=name,
                is_retryable=is_storage_transient,
                sleep=self._sleep,
            )
        except StorageTransientError:
            raise
        except Exception as exc:
            if is_storage_transient(exc):
                raise StorageTransientError(f"{name}: {exc}") from exc
            raise

    def _failed(
        self,
        series: Series,
        exc: Exception,
        error_type: str,
        run_context: RunContext | None,
    ) -> SeriesOutcome:
        log_error(
            LOGGER,
            run_context,
            component=_COMPONENT,
            where="materialize",
            exc=exc,
            extra={"series_id": series.id, "error_type": error_type},
        )
        return SeriesOutcome(
            series_id=series.id,
            status="error",
            error=str(exc) or type(exc).__name__,
            error_type=error_type,
        )
