"""Sync manager: last-sync bookkeeping, the sync state machine and scheduling.

One cycle for an entity (a patient):

1. upload every pending record, one at a time, logging and skipping failures;
2. fetch remote records updated after the last sync time;
3. merge them into the cache under the conflict policy;
4. advance the last sync time, only if the merge succeeded.

At most one cycle runs per manager. A request while a cycle is running gets
``SyncStatus.ALREADY_SYNCING`` back immediately; it is never queued.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from healthsync.core.errors import (
    ConflictError,
    NetworkError,
    SecurityError,
    ValidationError,
)
from healthsync.core.storage.cache import RecordCache
from healthsync.core.storage.database import RecordDatabase
from healthsync.core.stream import ObservableValue

if TYPE_CHECKING:
    from healthsync.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = timedelta(hours=24)


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncStatus(str, Enum):
    """Outcome of one ``sync`` call."""

    SUCCESS = "success"
    ERROR = "error"
    ALREADY_SYNCING = "already_syncing"


class ConflictResolution(str, Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MANUAL = "manual"


@dataclass
class MergeResult:
    merged: int = 0
    conflicts: list[ConflictError] = field(default_factory=list)


@dataclass
class SyncResult:
    status: SyncStatus
    uploaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    merged: int = 0
    conflicts: list[ConflictError] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "uploaded": list(self.uploaded),
            "failed": list(self.failed),
            "merged": self.merged,
            "conflicts": [conflict.record_id for conflict in self.conflicts],
            "error": str(self.error) if self.error else None,
        }


class SyncTarget(Protocol):
    """The data side of a sync cycle (implemented by the repository)."""

    def pending_ids(self, entity_id: str) -> list[str]:
        """Ids of records awaiting upload, oldest first."""
        ...

    async def push(self, record_id: str) -> None:
        """Upload one pending record. Raises on failure."""
        ...

    async def fetch_updates(self, entity_id: str, since: datetime | None) -> list[Any]:
        """Remote records changed after ``since`` (everything when None)."""
        ...

    def merge(self, entity_id: str, remote: list[Any], policy: ConflictResolution) -> MergeResult:
        """Write remote records into the cache under ``policy``."""
        ...


class SyncSchedule:
    """Handle for a periodic sync task."""

    def __init__(self, task: asyncio.Task, interval: float) -> None:
        self._task = task
        self.interval = interval

    @property
    def running(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncManager:
    """Coordinates sync cycles against a :class:`SyncTarget`.

    Usage::

        manager = SyncManager(db, cache, conflict_resolution=ConflictResolution.SERVER_WINS)
        result = await manager.sync("patient-1", repository)
        schedule = manager.schedule_periodic_sync(timedelta(hours=24), job)
    """

    def __init__(
        self,
        database: RecordDatabase,
        cache: RecordCache,
        *,
        conflict_resolution: ConflictResolution = ConflictResolution.SERVER_WINS,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = database
        self._cache = cache
        self.conflict_resolution = ConflictResolution(conflict_resolution)
        self._audit = audit
        self._clock = clock
        self._guard = threading.Lock()
        self._state = ObservableValue(SyncState.IDLE)
        self._schedule: SyncSchedule | None = None

    @property
    def state(self) -> ObservableValue[SyncState]:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._guard.locked()

    # ------------------------------------------------------------------
    # Last sync bookkeeping
    # ------------------------------------------------------------------

    def get_last_sync_time(self, entity_id: str) -> datetime | None:
        row = self._db.connection.execute(
            "SELECT last_sync FROM sync_state WHERE entity_id = ?", (entity_id,)
        ).fetchone()
        if row is None or not row["last_sync"]:
            return None
        return datetime.fromisoformat(row["last_sync"])

    def update_last_sync_time(self, entity_id: str, when: datetime | None = None) -> datetime:
        when = when or self._clock()
        conn = self._db.connection
        conn.execute(
            """INSERT INTO sync_state (entity_id, last_sync) VALUES (?, ?)
               ON CONFLICT(entity_id) DO UPDATE SET last_sync = excluded.last_sync""",
            (entity_id, when.isoformat()),
        )
        conn.commit()
        return when

    def mark_for_sync(self, record_id: str) -> bool:
        """Queue a cached record for upload on the next cycle."""
        return self._cache.set_pending(record_id, True)

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    async def sync(self, entity_id: str, target: SyncTarget) -> SyncResult:
        """Run one sync cycle for ``entity_id``.

        Returns:
            SyncResult. ``ALREADY_SYNCING`` if a cycle is in progress.

        Raises:
            SecurityError: A key or crypto failure aborts the cycle.
        """
        if not self._guard.acquire(blocking=False):
            logger.info("Sync for %s rejected: already syncing", entity_id)
            return SyncResult(status=SyncStatus.ALREADY_SYNCING)

        start = time.perf_counter()
        started_at = self._clock()
        result = SyncResult(status=SyncStatus.SUCCESS)
        self._state.set(SyncState.SYNCING)
        try:
            await self._upload_pending(entity_id, target, result)

            since = self.get_last_sync_time(entity_id)
            try:
                remote = await target.fetch_updates(entity_id, since)
                merge = target.merge(entity_id, remote, self.conflict_resolution)
            except (NetworkError, ValidationError) as exc:
                logger.warning("Sync for %s failed: %s", entity_id, exc)
                result.status = SyncStatus.ERROR
                result.error = exc
            else:
                result.merged = merge.merged
                result.conflicts = list(merge.conflicts)
                # Cycle start, so changes made while it ran are fetched next time
                self.update_last_sync_time(entity_id, started_at)
        except SecurityError as exc:
            result.status = SyncStatus.ERROR
            result.error = exc
            self._state.set(SyncState.ERROR)
            self._record(entity_id, result, start)
            self._state.set(SyncState.IDLE)
            raise
        except Exception as exc:
            logger.exception("Sync for %s failed unexpectedly", entity_id)
            result.status = SyncStatus.ERROR
            result.error = exc
        finally:
            self._guard.release()

        self._state.set(SyncState.SUCCESS if result.ok else SyncState.ERROR)
        self._record(entity_id, result, start)
        self._state.set(SyncState.IDLE)
        logger.info(
            "Sync for %s finished: %s (uploaded=%d failed=%d merged=%d conflicts=%d)",
            entity_id,
            result.status.value,
            len(result.uploaded),
            len(result.failed),
            result.merged,
            len(result.conflicts),
        )
        return result

    async def _upload_pending(self, entity_id: str, target: SyncTarget, result: SyncResult) -> None:
        for record_id in target.pending_ids(entity_id):
            try:
                await target.push(record_id)
            except SecurityError:
                raise
            except Exception as exc:
                logger.warning("Upload of pending record %s failed: %s", record_id, exc)
                result.failed.append(record_id)
            else:
                result.uploaded.append(record_id)

    def _record(self, entity_id: str, result: SyncResult, start: float) -> None:
        if self._audit is None:
            return
        self._audit.log_sync(
            entity_id,
            status="success" if result.ok else "failure",
            uploaded=len(result.uploaded),
            failed=len(result.failed),
            merged=result.merged,
            conflicts=len(result.conflicts),
            duration_ms=(time.perf_counter() - start) * 1000,
            error_type=type(result.error).__name__ if result.error else None,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_periodic_sync(
        self,
        interval: timedelta | float,
        job: Callable[[], Awaitable[Any]],
    ) -> SyncSchedule:
        """Run ``job`` every ``interval`` on one dedicated task.

        Replaces any previous schedule. Must be called with a running loop.
        """
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        if seconds <= 0:
            raise ValidationError(f"Sync interval must be positive, got {seconds}")
        if self._schedule is not None:
            self._schedule.cancel()
        task = asyncio.get_running_loop().create_task(self._periodic(seconds, job))
        self._schedule = SyncSchedule(task, seconds)
        logger.info("Periodic sync scheduled every %.0fs", seconds)
        return self._schedule

    def cancel_periodic_sync(self) -> None:
        if self._schedule is not None:
            self._schedule.cancel()
            self._schedule = None

    async def _periodic(self, seconds: float, job: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(seconds)
            try:
                await job()
            except SecurityError:
                logger.error("Periodic sync stopped after a security failure")
                raise
            except Exception:
                logger.exception("Periodic sync job failed")
