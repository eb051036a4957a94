from __future__ import annotations

from datetime import datetime
from typing import Protocol

from calsync.core.models import Instance, Series


class SeriesInstanceStore(Protocol):
    """Storage collaborator consumed by the materializer and scheduler.

    Implementations raise StorageTransientError for failures worth retrying.
    """

    def list_instance_start_times(
        self,
        series_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> set[datetime]: ...

    def bulk_insert_instances(self, series_id: str, instances: list[Instance]) -> int: ...

    def list_active_recurring_series(self) -> list[Series]: ...
