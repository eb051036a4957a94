from __future__ import annotations


class RuleValidationError(ValueError):
    """Recurrence rule is malformed; never retried."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StorageTransientError(RuntimeError):
    """Read/write against the instance store failed and may succeed on retry."""


class SeriesNotFoundError(LookupError):
    pass
