from __future__ import annotations

import json
import logging
import os
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

LOGGER = logging.getLogger(__name__)

_DEV_ENVS = {"dev", "development", "local"}
_SECRET_KEYS = {"authorization", "api_key", "apikey", "token", "password", "secret"}


@dataclass
class RunContext:
    """Correlation data for one materialization run."""

    run_id: str
    trigger: str
    ts: datetime
    env: str
    meta: dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.monotonic)


def _truncate_text(text: str, limit: int = 120) -> str:
    cleaned = text.replace("\n", " ").strip()
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[:limit].rstrip() + "…"


def _env_label() -> str:
    env = os.getenv("APP_ENV", "prod").strip().lower()
    return "dev" if env in _DEV_ENVS else "prod"


def start_run(trigger: str, *, now: datetime | None = None) -> RunContext:
    return RunContext(
        run_id=str(uuid.uuid4()),
        trigger=trigger,
        ts=now or datetime.now(timezone.utc),
        env=_env_label(),
    )


def elapsed_ms(start_time: float) -> float:
    return max((time.monotonic() - start_time) * 1000, 0.01)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def safe_log_payload(data: Any) -> Any:
    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            if str(key).lower() in _SECRET_KEYS:
                sanitized[key] = "***"
                continue
            sanitized[key] = safe_log_payload(value)
        return sanitized
    if isinstance(data, (list, tuple)):
        return [safe_log_payload(item) for item in data]
    return data


def log_event(
    logger: logging.Logger,
    run_context: RunContext | None,
    *,
    component: str,
    event: str,
    status: str = "ok",
    duration_ms: float | None = None,
    **fields: Any,
) -> None:
    payload: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "run_id": run_context.run_id if run_context else "-",
        "component": component,
        "event": event,
        "status": status,
        "env": run_context.env if run_context else "prod",
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if fields:
        payload.update(safe_log_payload(fields))
    message = json.dumps(payload, ensure_ascii=False, default=_json_default)
    if status == "error":
        logger.error(message)
    elif status == "degraded":
        logger.warning(message)
    else:
        logger.info(message)


def log_error(
    logger: logging.Logger,
    run_context: RunContext | None,
    *,
    component: str,
    where: str,
    exc: BaseException,
    extra: dict[str, Any] | None = None,
) -> None:
    env = run_context.env if run_context else "prod"
    exc_msg = str(exc) if env == "dev" else _truncate_text(str(exc))
    payload: dict[str, Any] = {
        "where": where,
        "exc_type": type(exc).__name__,
        "exc_msg": exc_msg,
    }
    if env == "dev":
        payload["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    if extra:
        payload.update(extra)
    log_event(
        logger,
        run_context,
        component=component,
        event="error",
        status="error",
        **payload,
    )
