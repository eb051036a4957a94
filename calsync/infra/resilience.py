from __future__ import annotations

import logging
import random
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from calsync.core.errors import StorageTransientError
from calsync.infra.run_context import RunContext, log_event

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 250
    max_delay_ms: int = 2000
    jitter_ms: int = 200


def _next_backoff_ms(policy: RetryPolicy, attempt: int) -> int:
    exp = min(policy.max_delay_ms, int(policy.base_delay_ms * (2 ** max(attempt - 1, 0))))
    jitter = int(random.random() * policy.jitter_ms) if policy.jitter_ms > 0 else 0
    return min(policy.max_delay_ms, exp + jitter)


def is_storage_transient(exc: Exception) -> bool:
    return isinstance(exc, (StorageTransientError, sqlite3.OperationalError, TimeoutError))


def retry_sync(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    logger: logging.Logger,
    run_context: RunContext | None,
    component: str,
    name: str,
    is_retryable: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as exc:
            if attempt >= attempts or not is_retryable(exc):
                raise
            wait_ms = _next_backoff_ms(policy, attempt)
            log_event(
                logger,
                run_context,
                component=component,
                event="retry.attempt",
                status="ok",
                name=name,
                attempt=attempt + 1,
                wait_ms=wait_ms,
                exc_type=type(exc).__name__,
            )
            sleep(wait_ms / 1000)
    raise RuntimeError("retry_attempts_exhausted")
