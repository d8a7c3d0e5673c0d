"""Wearables repository: pull, validate, merge and queue wearable readings."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from healthsync.core.errors import NetworkError
from healthsync.core.stream import ObservableValue
from healthsync.domains.records.repository import HealthRecordsRepository
from healthsync.domains.records.service import HealthRecordsService
from healthsync.domains.wearables import WearableSource
from healthsync.domains.wearables.models import HealthMetric

logger = logging.getLogger(__name__)


@dataclass
class WearableSyncResult:
    received: int = 0
    accepted: list[str] = field(default_factory=list)      # record ids stored
    rejected: dict[str, list[str]] = field(default_factory=dict)  # reading id -> violations
    skipped: int = 0                                       # already cached
    uploaded: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "accepted": len(self.accepted),
            "rejected": {k: list(v) for k, v in self.rejected.items()},
            "skipped": self.skipped,
            "uploaded": self.uploaded,
        }


class WearablesRepository:
    """Moves readings from a :class:`WearableSource` into the record cache.

    Valid readings update :attr:`metrics` (newest value per metric name) and
    are stored as encrypted ``wearable_data`` records, pending upload.
    Invalid readings are dropped and reported.
    """

    def __init__(
        self,
        source: WearableSource,
        records: HealthRecordsRepository,
        *,
        service: HealthRecordsService | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._source = source
        self._records = records
        self._service = service
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_pull: datetime | None = None
        self.metrics: ObservableValue[dict[str, HealthMetric]] = ObservableValue({})

    @property
    def source_name(self) -> str:
        return self._source.name

    @property
    def last_pull(self) -> datetime | None:
        return self._last_pull

    async def sync_wearable_data(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        *,
        upload: bool = False,
    ) -> WearableSyncResult:
        """Pull readings since ``since`` (default: the previous pull).

        Args:
            upload: Also push the new records as one batch when online.
                Records that fail to upload stay pending for the next sync.

        Raises:
            NetworkError: The source is not connected.
        """
        if not self._source.is_connected():
            raise NetworkError(f"Wearable source {self._source.name} is not connected")

        async with self._lock:
            now = self._clock()
            readings = await self._source.fetch(since or self._last_pull, until)
            result = WearableSyncResult(received=len(readings))
            merged = dict(self.metrics.value)
            new_records = []

            for data in readings:
                problems = data.violations(now)
                if problems:
                    logger.warning(
                        "Dropped wearable reading %s: %d violations", data.id, len(problems)
                    )
                    result.rejected[data.id] = problems
                    continue

                for metric in data.to_metrics():
                    current = merged.get(metric.name)
                    if current is None or metric.timestamp >= current.timestamp:
                        merged[metric.name] = metric

                if self._records.has_record(data.record_id):
                    result.skipped += 1
                    continue
                record = data.to_health_record()
                self._records.save_local(record)
                new_records.append(record)
                result.accepted.append(record.id)

            self.metrics.set(merged)
            if upload and new_records:
                result.uploaded = await self._upload(new_records)
            self._last_pull = until or now

        logger.info(
            "Wearable pull from %s: %d received, %d stored, %d rejected",
            self._source.name,
            result.received,
            len(result.accepted),
            len(result.rejected),
        )
        return result

    async def _upload(self, records: list) -> int:
        if self._service is None:
            return 0
        return await self._records.upload_batch(records, service=self._service)
