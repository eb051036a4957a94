"""Daily materialization job on APScheduler.

Each run covers the window ``[now, now + horizon)`` for every active recurring
series. Series are independent: they are materialized in worker threads,
bounded by ``max_workers``, and a failing series only shows up as an error
outcome in the run summary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone, tzinfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from calsync.core.instance_store import SeriesInstanceStore
from calsync.core.materializer import InstanceMaterializer
from calsync.core.models import RunSummary, Series, SeriesOutcome
from calsync.infra.run_context import RunContext, elapsed_ms, log_error, log_event, start_run

LOGGER = logging.getLogger(__name__)

JOB_ID = "materialize:recurring-series"
DEFAULT_HORIZON = timedelta(days=90)

_COMPONENT = "scheduler"


class MaterializationScheduler:
    def __init__(
        self,
        *,
        store: SeriesInstanceStore,
        materializer: InstanceMaterializer | None = None,
        horizon: timedelta = DEFAULT_HORIZON,
        max_workers: int = 4,
        run_deadline_seconds: float = 0.0,
        timezone_info: tzinfo = timezone.utc,
        run_hour: int = 2,
        run_minute: int = 0,
    ) -> None:
        self._scheduler = AsyncIOScheduler(timezone=timezone_info)
        self._store = store
        self._materializer = materializer or InstanceMaterializer(store)
        self._horizon = horizon
        self._max_workers = max(1, max_workers)
        self._run_deadline_seconds = run_deadline_seconds
        self._tz = timezone_info
        self._run_hour = run_hour
        self._run_minute = run_minute
        self.last_summary: RunSummary | None = None

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Register the daily job; call from inside a running event loop."""
        if self._scheduler.running:
            LOGGER.info("MaterializationScheduler already started, skipping")
            return
        self._scheduler.add_job(
            self._run_scheduled,
            trigger=CronTrigger(hour=self._run_hour, minute=self._run_minute, timezone=self._tz),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        LOGGER.info(
            "MaterializationScheduler started: run_at=%02d:%02d timezone=%s horizon_days=%s",
            self._run_hour,
            self._run_minute,
            self._tz,
            self._horizon.days,
        )

    def shutdown(self, wait: bool = True) -> None:
        if not self._scheduler.running:
            return
        try:
            self._scheduler.shutdown(wait=wait)
            LOGGER.info("MaterializationScheduler shutdown")
        except Exception:
            LOGGER.exception("MaterializationScheduler shutdown error")

    def next_run_time(self) -> datetime | None:
        job = self._scheduler.get_job(JOB_ID)
        if job is None:
            return None
        return job.next_run_time

    async def _run_scheduled(self) -> None:
        await self.run_now(trigger="cron")

    async def run_now(self, now: datetime | None = None, *, trigger: str = "manual") -> RunSummary:
        """Materialize every active recurring series once; never raises.

        A naive ``now`` is read in the scheduler's time zone.
        """
        now = now or datetime.now(self._tz)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self._tz)
        window_end = now + self._horizon
        run_context = start_run(trigger, now=now)
        summary = RunSummary(
            run_id=run_context.run_id,
            window_start=now,
            window_end=window_end,
            started_at=now,
        )
        log_event(
            LOGGER,
            run_context,
            component=_COMPONENT,
            event="run.start",
            trigger=trigger,
            window_start=now.isoformat(),
            window_end=window_end.isoformat(),
        )

        try:
            series_list = await asyncio.to_thread(self._store.list_active_recurring_series)
        except Exception as exc:
            log_error(LOGGER, run_context, component=_COMPONENT, where="list_active_recurring_series", exc=exc)
            summary.total_errors = 1
            return self._finish(summary, run_context)

        summary.total_series = len(series_list)
        deadline = time.monotonic() + self._run_deadline_seconds if self._run_deadline_seconds > 0 else None
        semaphore = asyncio.Semaphore(self._max_workers)

        async def _one(series: Series) -> SeriesOutcome | None:
            async with semaphore:
                if deadline is not None and time.monotonic() >= deadline:
                    return None
                return await asyncio.to_thread(
                    self._materializer.materialize,
                    series,
                    now,
                    window_end,
                    run_context=run_context,
                )

        results = await asyncio.gather(*(_one(series) for series in series_list), return_exceptions=True)
        for series, result in zip(series_list, results):
            if result is None:
                summary.not_started += 1
            elif isinstance(result, BaseException):
                log_error(
                    LOGGER,
                    run_context,
                    component=_COMPONENT,
                    where="materialize",
                    exc=result,
                    extra={"series_id": series.id},
                )
                summary.add(
                    SeriesOutcome(
                        series_id=series.id,
                        status="error",
                        error=str(result) or type(result).__name__,
                        error_type="unexpected",
                    )
                )
            else:
                summary.add(result)
        if summary.not_started:
            LOGGER.warning(
                "Run deadline reached: run_id=%s not_started=%s",
                run_context.run_id,
                summary.not_started,
            )
        return self._finish(summary, run_context)

    def _finish(self, summary: RunSummary, run_context: RunContext) -> RunSummary:
        summary.duration_ms = elapsed_ms(run_context.start_time)
        log_event(
            LOGGER,
            run_context,
            component=_COMPONENT,
            event="run.done",
            status="degraded" if summary.total_errors or summary.not_started else "ok",
            duration_ms=summary.duration_ms,
            **summary.to_log_fields(),
        )
        self.last_summary = summary
        return summary
