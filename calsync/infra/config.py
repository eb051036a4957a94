from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from calsync.infra.resilience import RetryPolicy

LOGGER = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/calsync.db")
DEFAULT_TIMEZONE = "UTC"
DEFAULT_HORIZON_DAYS = 90
DEFAULT_RUN_HOUR = 2
DEFAULT_RUN_MINUTE = 0
DEFAULT_MAX_WORKERS = 4


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    horizon_days: int
    run_hour: int
    run_minute: int
    max_workers: int
    run_deadline_seconds: float
    retry_max_attempts: int
    retry_base_delay_ms: int
    retry_max_delay_ms: int
    retry_jitter_ms: int

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter_ms=self.retry_jitter_ms,
        )


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    if env is None:
        load_dotenv()
        env = os.environ
    return Settings(
        db_path=Path(env.get("CALSYNC_DB_PATH") or DEFAULT_DB_PATH),
        timezone=(env.get("CALSYNC_TIMEZONE") or DEFAULT_TIMEZONE).strip(),
        horizon_days=_parse_int_with_default(env, "CALSYNC_HORIZON_DAYS", DEFAULT_HORIZON_DAYS),
        run_hour=_parse_int_with_default(env, "CALSYNC_RUN_HOUR", DEFAULT_RUN_HOUR),
        run_minute=_parse_int_with_default(env, "CALSYNC_RUN_MINUTE", DEFAULT_RUN_MINUTE),
        max_workers=_parse_int_with_default(env, "CALSYNC_MAX_WORKERS", DEFAULT_MAX_WORKERS),
        run_deadline_seconds=_parse_float_with_default(env, "CALSYNC_RUN_DEADLINE_SECONDS", 0.0),
        retry_max_attempts=_parse_int_with_default(env, "CALSYNC_RETRY_MAX_ATTEMPTS", 3),
        retry_base_delay_ms=_parse_int_with_default(env, "CALSYNC_RETRY_BASE_DELAY_MS", 250),
        retry_max_delay_ms=_parse_int_with_default(env, "CALSYNC_RETRY_MAX_DELAY_MS", 2000),
        retry_jitter_ms=_parse_int_with_default(env, "CALSYNC_RETRY_JITTER_MS", 200),
    )


def validate_settings(settings: Settings, *, logger: logging.Logger | None = None) -> None:
    log = logger or LOGGER
    try:
        ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        log.error("startup.env invalid: unknown timezone=%s", settings.timezone)
        raise SystemExit("CALSYNC_TIMEZONE is invalid")
    if settings.horizon_days <= 0:
        log.error("startup.env invalid: horizon_days=%s", settings.horizon_days)
        raise SystemExit("CALSYNC_HORIZON_DAYS must be positive")
    if settings.max_workers <= 0:
        log.error("startup.env invalid: max_workers=%s", settings.max_workers)
        raise SystemExit("CALSYNC_MAX_WORKERS must be positive")
    if not 0 <= settings.run_hour <= 23 or not 0 <= settings.run_minute <= 59:
        log.error("startup.env invalid: run_at=%02d:%02d", settings.run_hour, settings.run_minute)
        raise SystemExit("CALSYNC_RUN_HOUR/CALSYNC_RUN_MINUTE are invalid")
    if settings.run_deadline_seconds < 0:
        log.warning("startup.env run_deadline_seconds negative; deadline disabled")


def _parse_int_with_default(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        LOGGER.warning("startup.env malformed %s=%r; using default %s", key, value, default)
        return default


def _parse_float_with_default(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError:
        LOGGER.warning("startup.env malformed %s=%r; using default %s", key, value, default)
        return default
