from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import timedelta

from calsync.core.materialization_scheduler import MaterializationScheduler
from calsync.core.materializer import InstanceMaterializer
from calsync.infra.config import Settings, load_settings, validate_settings
from calsync.infra.logging_config import configure_logging
from calsync.infra.storage import EventStorage

LOGGER = logging.getLogger(__name__)


def build_scheduler(settings: Settings, storage: EventStorage) -> MaterializationScheduler:
    materializer = InstanceMaterializer(storage, retry_policy=settings.retry_policy)
    return MaterializationScheduler(
        store=storage,
        materializer=materializer,
        horizon=timedelta(days=settings.horizon_days),
        max_workers=settings.max_workers,
        run_deadline_seconds=settings.run_deadline_seconds,
        timezone_info=settings.tzinfo,
        run_hour=settings.run_hour,
        run_minute=settings.run_minute,
    )


async def _run_once(scheduler: MaterializationScheduler) -> int:
    summary = await scheduler.run_now(trigger="manual")
    print(json.dumps(summary.to_log_fields()))
    return 0


async def _serve(scheduler: MaterializationScheduler) -> None:
    scheduler.start()
    LOGGER.info("Next materialization run at %s", scheduler.next_run_time())
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="calsync", description="Materialize recurring calendar series")
    parser.add_argument("--once", action="store_true", help="run one materialization pass and exit")
    args = parser.parse_args(argv)

    configure_logging()
    settings = load_settings()
    validate_settings(settings, logger=LOGGER)
    storage = EventStorage(settings.db_path)
    scheduler = build_scheduler(settings, storage)
    try:
        if args.once:
            return asyncio.run(_run_once(scheduler))
        asyncio.run(_serve(scheduler))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, shutting down")
    finally:
        storage.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
