"""Health records repository: the single entry point for record reads and writes.

Reads are cache-first and return a :class:`Stream` of pages. Uploads go
through the validation gate, are stored encrypted and pending, then pushed;
when the service is unreachable they stay pending until a later sync.

Only this class promotes network data into the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Literal

from healthsync.core.errors import (
    ApiError,
    ConflictError,
    NetworkError,
    SecurityError,
    ValidationError,
)
from healthsync.core.security.encryption import EncryptionManager
from healthsync.core.storage.cache import RecordCache
from healthsync.core.storage.models import CachedRecord
from healthsync.core.stream import Stream
from healthsync.domains.records.models import (
    HealthRecord,
    Pagination,
    RecordFilter,
    UploadStatus,
)
from healthsync.domains.records.service import HealthRecordsService
from healthsync.domains.records.sync import (
    ConflictResolution,
    MergeResult,
    SyncManager,
    SyncResult,
)
from healthsync.domains.records.validation import RecordValidator

if TYPE_CHECKING:
    from healthsync.core.audit.logger import AuditLogger
    from healthsync.core.auth import AuthService
    from healthsync.core.network.monitor import ConnectivityMonitor

logger = logging.getLogger(__name__)

DEFAULT_KEY_ALIAS = "health_records"
DEFAULT_CACHE_TTL = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class KeyRotation:
    key_alias: str
    version: int
    reencrypted: int = 0  # cached rows moved to the new version
    purged: int = 0       # expired key versions deleted


class HealthRecordsRepository:
    """Cache-first record access with an offline upload queue.

    Usage::

        repo = HealthRecordsRepository(
            cache=cache, encryption=encryption, service=service,
            sync_manager=sync_manager, auth=auth,
        )
        pages = await repo.get_records(RecordFilter("patient-1")).collect()
        status = await repo.upload(record).last()
        result = await repo.sync("patient-1")
    """

    def __init__(
        self,
        *,
        cache: RecordCache,
        encryption: EncryptionManager,
        service: HealthRecordsService,
        sync_manager: SyncManager,
        auth: AuthService,
        validator: RecordValidator | None = None,
        audit: AuditLogger | None = None,
        monitor: ConnectivityMonitor | None = None,
        key_alias: str = DEFAULT_KEY_ALIAS,
        cache_ttl: timedelta = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cache = cache
        self._encryption = encryption
        self._service = service
        self._sync = sync_manager
        self._auth = auth
        self._validator = validator or RecordValidator()
        self._audit = audit
        self._monitor = monitor
        self._key_alias = key_alias
        self._cache_ttl = cache_ttl
        self._clock = clock

        self._upload_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._pending_streams: dict[str, list[Stream[UploadStatus]]] = {}
        self._conflicts: dict[str, HealthRecord] = {}

    @property
    def sync_manager(self) -> SyncManager:
        return self._sync

    @property
    def is_online(self) -> bool:
        return self._monitor is None or self._monitor.is_online

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_records(
        self,
        record_filter: RecordFilter,
        pagination: Pagination = Pagination(),
        force_refresh: bool = False,
    ) -> Stream[list[HealthRecord]]:
        """Stream one page of records: cached first, then fresh from the network.

        Cancelling every subscription cancels the underlying load.

        Raises:
            ValidationError: On a blank patient id or bad pagination.
        """
        if not record_filter.patient_id:
            raise ValidationError("patient_id is required")
        self._check_page(pagination)

        task: asyncio.Task | None = None

        def _stop() -> None:
            if task is not None and not task.done():
                task.cancel()

        stream: Stream[list[HealthRecord]] = Stream(on_idle=_stop)
        task = self._spawn(self._load(record_filter, pagination, force_refresh, stream))
        return stream

    async def _load(
        self,
        record_filter: RecordFilter,
        pagination: Pagination,
        force_refresh: bool,
        stream: Stream[list[HealthRecord]],
    ) -> None:
        try:
            cached = self._read_page(record_filter, pagination)
            if cached:
                stream.emit(cached)
                self._log_access(record_filter.patient_id, cached, "cache")

            state = self._cache.get_cache_state(record_filter.scope, self._cache_ttl)
            if cached and not force_refresh and not state.is_expired(self._clock()):
                stream.complete()
                return

            try:
                if not self.is_online:
                    raise NetworkError("Offline")
                page = await self._service.get_patient_records(
                    record_filter.patient_id,
                    pagination.page,
                    pagination.page_size,
                    record_type=record_filter.record_type.value if record_filter.record_type else None,
                    status=record_filter.status.value if record_filter.status else None,
                )
            except (NetworkError, ApiError) as exc:
                if cached:
                    logger.warning(
                        "Refresh for %s failed, serving cache: %s",
                        record_filter.scope,
                        exc,
                    )
                    stream.complete()
                else:
                    stream.fail(exc)
                return

            for remote in page.records:
                self._store_remote(remote)
            self._cache.touch_cache_state(record_filter.scope, self._clock())

            fresh = self._read_page(record_filter, pagination)
            stream.emit(fresh)
            self._log_access(record_filter.patient_id, fresh, "network")
            stream.complete()
        except asyncio.CancelledError:
            logger.debug("Record load for %s cancelled", record_filter.scope)
            stream.complete()
            raise
        except SecurityError as exc:
            self._security_failure(exc)
            stream.fail(exc)
        except Exception as exc:
            logger.exception("Record load for %s failed", record_filter.scope)
            stream.fail(exc)

    async def get_record(self, record_id: str) -> HealthRecord:
        """Return one record, from cache if present, else from the service.

        Raises:
            NetworkError: Not cached and the service is unreachable.
            ApiError: The service rejected the lookup (e.g. 404).
        """
        row = self._cache.get_by_id(record_id)
        if row is not None:
            record = self._decrypt_row(row)
            self._log_access(record.patient_id, [record], "cache")
            return record
        if not self.is_online:
            raise NetworkError(f"Record {record_id} is not cached and the device is offline")
        remote = await self._service.get_record(record_id)
        self._store_remote(remote)
        self._log_access(remote.patient_id, [remote], "network")
        return remote

    def get_history(self, record_id: str) -> list[HealthRecord]:
        """Every stored version of a record, oldest first."""
        return [self._decrypt_row(row) for row in self._cache.get_history(record_id)]

    def get_pending(self, patient_id: str | None = None) -> list[HealthRecord]:
        """Records stored locally and not yet acknowledged by the service."""
        return [self._decrypt_row(row) for row in self._cache.get_pending(patient_id)]

    async def refresh(self, patient_id: str) -> int:
        """Pull every remote record for a patient into the cache.

        Returns:
            Number of records received.
        """
        if not self.is_online:
            raise NetworkError("Offline")
        remote = await self._service.get_updated_since(patient_id, None)
        for record in remote:
            self._store_remote(record)
        self._cache.touch_cache_state(RecordFilter(patient_id).scope, self._clock())
        logger.info("Refreshed %d records for patient cache", len(remote))
        return len(remote)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upload(self, record: HealthRecord) -> Stream[UploadStatus]:
        """Validate, store and upload a record.

        The stream emits UPLOADING, then SUCCESS, PENDING or ERROR. A PENDING
        stream stays open and emits SUCCESS once a later sync uploads the
        record. Cancelling a subscription does not cancel the upload.

        Raises:
            ValidationError: Before any cache or network work.
        """
        self._validator.validate(record)
        stream: Stream[UploadStatus] = Stream()
        self._spawn(self._upload(record, stream))
        return stream

    async def _upload(self, record: HealthRecord, stream: Stream[UploadStatus]) -> None:
        async with self._upload_lock:
            start = time.perf_counter()
            stream.emit(UploadStatus.uploading(record))
            try:
                self._store_local(record, pending=True)
                if not self.is_online:
                    self._park(record, stream, "offline", start)
                    return
                try:
                    server_copy = await self._service.upload_record(record)
                except NetworkError as exc:
                    self._park(record, stream, type(exc).__name__, start)
                    return
                except ApiError as exc:
                    self._cache.set_pending(record.id, False)
                    self._log_upload(record, "failure", type(exc).__name__, start)
                    stream.emit(UploadStatus.failed(exc, record))
                    stream.complete()
                    return

                stored = self._acknowledge(record.id, server_copy)
                self._log_upload(record, "success", None, start)
                stream.emit(UploadStatus.success(stored))
                stream.complete()
            except SecurityError as exc:
                self._security_failure(exc, record_id=record.id)
                stream.emit(UploadStatus.failed(exc, record))
                stream.complete()
            except Exception as exc:
                logger.exception("Upload of record %s failed", record.id)
                stream.emit(UploadStatus.failed(exc, record))
                stream.complete()

    def save_local(self, record: HealthRecord) -> HealthRecord:
        """Validate and store a record as pending without uploading it now."""
        self._validator.validate(record)
        try:
            stored = self._store_local(record, pending=True)
        except SecurityError as exc:
            self._security_failure(exc, record_id=record.id)
            raise
        return self._decrypt_row(stored)

    async def upload_batch(
        self,
        records: list[HealthRecord],
        *,
        service: HealthRecordsService | None = None,
    ) -> int:
        """Upload already-stored pending records through the batch endpoint.

        Runs under the same lock as single uploads. On a network or API
        failure the records stay pending for the next sync.

        Returns:
            Number of records the service accepted.
        """
        service = service or self._service
        if not records or not self.is_online:
            return 0
        async with self._upload_lock:
            try:
                accepted = await service.upload_wearable_batch(records)
            except (NetworkError, ApiError) as exc:
                logger.warning(
                    "Batch upload of %d records deferred to next sync: %s", len(records), exc
                )
                return 0
            for server_copy in accepted:
                self.acknowledge_upload(server_copy.id, server_copy)
        return len(accepted)

    def has_record(self, record_id: str) -> bool:
        return self._cache.get_by_id(record_id) is not None

    def acknowledge_upload(self, record_id: str, server_copy: HealthRecord) -> HealthRecord:
        """Mark a record uploaded by another channel (e.g. a wearable batch) as synced."""
        stored = self._acknowledge(record_id, server_copy)
        for stream in self._pending_streams.pop(record_id, []):
            if not stream.done:
                stream.emit(UploadStatus.success(stored))
                stream.complete()
        return stored

    def _park(self, record: HealthRecord, stream: Stream[UploadStatus], reason: str, start: float) -> None:
        logger.info("Record %s queued for sync (%s)", record.id, reason)
        self._pending_streams.setdefault(record.id, []).append(stream)
        self._log_upload(record, "pending", reason, start)
        stream.emit(UploadStatus.pending(record))

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, patient_id: str) -> SyncResult:
        """Run a sync cycle for a patient (at most one at a time).

        Cached rows still sealed with a retired key are re-encrypted first.
        """
        try:
            self._reencrypt_stale_rows()
            return await self._sync.sync(patient_id, self)
        except SecurityError as exc:
            self._security_failure(exc)
            raise

    def enable_reconnect_sync(self, patient_id: str) -> None:
        """Sync ``patient_id`` whenever connectivity comes back."""
        if self._monitor is None:
            return

        def _on_reconnect() -> None:
            self._spawn(self.sync(patient_id))

        self._monitor.on_reconnect(_on_reconnect)

    def get_conflicts(self) -> list[str]:
        return sorted(self._conflicts)

    def resolve_conflict(self, record_id: str, keep: Literal["local", "remote"]) -> HealthRecord:
        """Settle a conflict collected under the manual policy.

        ``remote`` overwrites the local copy. ``local`` keeps it pending with
        a version above the remote one, so the next sync uploads it.

        Raises:
            ValidationError: No open conflict for ``record_id`` or bad ``keep``.
        """
        if keep not in ("local", "remote"):
            raise ValidationError(f"keep must be 'local' or 'remote', got {keep!r}")
        remote = self._conflicts.get(record_id)
        if remote is None:
            raise ValidationError(f"No open conflict for record {record_id}")

        if keep == "remote":
            stored = self._cache.update(self._encrypt_row(remote, pending=False))
            self._fail_waiters(record_id, ConflictError(record_id, stored.version, remote.version))
        else:
            row = self._cache.get_by_id(record_id)
            if row is None:
                raise ValidationError(f"Record {record_id} is no longer cached")
            local = self._decrypt_row(row)
            local.metadata.version = max(local.version, remote.version + 1)
            stored = self._cache.update(self._encrypt_row(local, pending=True))
        del self._conflicts[record_id]
        logger.info("Conflict on %s resolved keeping %s copy", record_id, keep)
        return self._decrypt_row(stored)

    # SyncTarget -------------------------------------------------------

    def pending_ids(self, entity_id: str) -> list[str]:
        return [row.id for row in self._cache.get_pending(entity_id)]

    async def push(self, record_id: str) -> None:
        async with self._upload_lock:
            row = self._cache.get_by_id(record_id)
            if row is None or not row.pending:
                return
            record = self._decrypt_row(row)
            if not self.is_online:
                raise NetworkError("Offline")
            start = time.perf_counter()
            try:
                server_copy = await self._service.upload_record(record)
            except ApiError as exc:
                # Rejected by the service: drop from the queue, settle waiters
                self._cache.set_pending(record_id, False)
                self._log_upload(record, "failure", type(exc).__name__, start)
                self._fail_waiters(record_id, exc)
                raise
            self.acknowledge_upload(record_id, server_copy)
            self._log_upload(record, "success", None, start)

    async def fetch_updates(self, entity_id: str, since: datetime | None) -> list[HealthRecord]:
        if not self.is_online:
            raise NetworkError("Offline")
        return await self._service.get_updated_since(
            entity_id, since.isoformat() if since else None
        )

    def merge(
        self,
        entity_id: str,
        remote: list[HealthRecord],
        policy: ConflictResolution,
    ) -> MergeResult:
        result = MergeResult()
        for record in remote:
            local = self._cache.get_by_id(record.id)
            if local is None or not local.pending:
                if self._store_remote(record):
                    result.merged += 1
                continue

            if policy == ConflictResolution.SERVER_WINS:
                self._cache.update(self._encrypt_row(record, pending=False))
                self._fail_waiters(record.id, ConflictError(record.id, local.version, record.version))
                logger.info("Conflict on %s: server copy kept", record.id)
                result.merged += 1
            elif policy == ConflictResolution.CLIENT_WINS:
                logger.info("Conflict on %s: local copy kept for re-upload", record.id)
            else:
                self._conflicts[record.id] = record
                result.conflicts.append(ConflictError(record.id, local.version, record.version))
        if result.merged:
            self._cache.touch_cache_state(RecordFilter(entity_id).scope, self._clock())
        return result

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def migrate_encryption(self) -> int:
        """Re-encrypt every cached row, history included, sealed with an older key version.

        Returns:
            Number of rows moved to the current version.

        Raises:
            SecurityError: A row can no longer be decrypted (fails closed).
        """
        try:
            return self._reencrypt_stale_rows()
        except SecurityError as exc:
            self._security_failure(exc)
            raise

    def rotate_key(self, *, purge_expired: bool = True) -> KeyRotation:
        """Rotate the record key and move the cache onto the new version.

        Expired versions are purged only once no cached row references them.
        """
        try:
            self._encryption.rotate_key(self._key_alias)
            migrated = self._reencrypt_stale_rows()
            purged = (
                self._encryption.purge_expired_keys(self._cache.key_versions_in_use())
                if purge_expired
                else 0
            )
        except SecurityError as exc:
            self._security_failure(exc)
            raise
        return KeyRotation(
            key_alias=self._key_alias,
            version=self._encryption.current_version(self._key_alias) or 1,
            reencrypted=migrated,
            purged=purged,
        )

    def _reencrypt_stale_rows(self) -> int:
        current = self._encryption.current_version(self._key_alias)
        if current is None:
            return 0
        moved = 0
        for row in self._cache.get_encrypted_before(self._key_alias, current):
            sealed = self._encryption.reencrypt(row.encrypted)
            self._cache.replace_encrypted(row.id, row.version, sealed)
            moved += 1
        if moved:
            logger.info("Re-encrypted %d cached rows under %s v%d", moved, self._key_alias, current)
        return moved

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait for every background load/upload started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for streams in self._pending_streams.values():
            for stream in streams:
                stream.complete()
        self._pending_streams.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _check_page(self, pagination: Pagination) -> None:
        if pagination.page < 0:
            raise ValidationError(f"Page must be >= 0, got {pagination.page}")
        if not 1 <= pagination.page_size <= self._cache.max_page_size:
            raise ValidationError(
                f"Page size must be between 1 and {self._cache.max_page_size}, "
                f"got {pagination.page_size}"
            )

    def _read_page(self, record_filter: RecordFilter, pagination: Pagination) -> list[HealthRecord]:
        rows = self._cache.get_by_patient(
            record_filter.patient_id,
            pagination.page,
            pagination.page_size,
            record_type=record_filter.record_type.value if record_filter.record_type else None,
            status=record_filter.status.value if record_filter.status else None,
        )
        return [self._decrypt_row(row) for row in rows]

    def _encrypt_row(self, record: HealthRecord, *, pending: bool) -> CachedRecord:
        encrypted = self._encryption.encrypt_json(record.to_dict(), self._key_alias)
        return CachedRecord(
            id=record.id,
            patient_id=record.patient_id,
            record_type=record.type.value,
            status=record.status.value,
            record_date=record.date,
            encrypted=encrypted,
            version=record.version,
            last_modified=self._clock().isoformat(),
            pending=pending,
        )

    def _decrypt_row(self, row: CachedRecord) -> HealthRecord:
        record = HealthRecord.from_dict(self._encryption.decrypt_json(row.encrypted))
        record.metadata.version = row.version
        return record

    def _store_local(self, record: HealthRecord, *, pending: bool) -> CachedRecord:
        return self._cache.update(self._encrypt_row(record, pending=pending))

    def _store_remote(self, record: HealthRecord) -> bool:
        """Write a server copy unless the cache already holds it or a newer one.

        Pending local copies are left alone; conflicts are settled by ``merge``.

        Returns:
            True if the cache changed.
        """
        local = self._cache.get_by_id(record.id)
        if local is not None:
            if local.pending:
                return False
            if record.version < local.version:
                return False
            if record.version == local.version and local.is_immutable:
                return False
        self._cache.update(self._encrypt_row(record, pending=False))
        return True

    def _acknowledge(self, record_id: str, server_copy: HealthRecord) -> HealthRecord:
        """Clear the pending flag after the service accepted an upload."""
        row = self._cache.get_by_id(record_id)
        if row is not None and server_copy.version <= row.version:
            self._cache.mark_synced(record_id)
            return self._decrypt_row(row)
        stored = self._cache.update(self._encrypt_row(server_copy, pending=False))
        return self._decrypt_row(stored)

    def _fail_waiters(self, record_id: str, error: BaseException) -> None:
        for stream in self._pending_streams.pop(record_id, []):
            if not stream.done:
                stream.emit(UploadStatus.failed(error))
                stream.complete()

    def _security_failure(self, error: SecurityError, *, record_id: str | None = None) -> None:
        logger.error("Security failure, terminating session: %s", error)
        if self._audit is not None:
            self._audit.log_security_failure(error, record_id=record_id, key_alias=self._key_alias)
        self._auth.terminate_session(f"security failure: {type(error).__name__}")

    def _log_access(self, patient_id: str, records: list[HealthRecord], source: str) -> None:
        if self._audit is not None:
            self._audit.log_record_access(
                patient_id, record_ids=[r.id for r in records], source=source
            )

    def _log_upload(
        self,
        record: HealthRecord,
        status: str,
        error_type: str | None,
        start: float,
    ) -> None:
        if self._audit is not None:
            self._audit.log_record_upload(
                record.id,
                record.patient_id,
                status=status,
                error_type=error_type,
                duration_ms=(time.perf_counter() - start) * 1000,
            )
