"""Process logging for the calsync job.

Domain events from ``run_context.log_event`` are already single-line JSON, so
handlers only prefix them with time, level and logger name. ``LOG_LEVEL`` and
``LOG_FILE`` come from the environment; the file is rotated so a long-running
daily job cannot fill the disk.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3

# APScheduler reports every job submission and completion at INFO.
_QUIET_LOGGERS = ("apscheduler",)


def _level_from_env() -> int:
    raw = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def _file_handler(log_file: str, formatter: logging.Formatter) -> logging.Handler | None:
    try:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    except OSError as exc:
        logging.getLogger(__name__).warning("Could not open log file %s: %s; logging to stderr only", log_file, exc)
        return None
    handler.setFormatter(formatter)
    return handler


def configure_logging(*, level: int | None = None, log_file: str | None = None) -> None:
    """Install stderr (and optional rotating file) handlers on the root logger.

    Safe to call repeatedly: previous root handlers are replaced, not stacked.
    """
    if level is None:
        level = _level_from_env()
    if log_file is None:
        log_file = os.environ.get("LOG_FILE", "").strip()

    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(level)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        handler = _file_handler(log_file, formatter)
        if handler is not None:
            root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
