"""MCP tools for reading, uploading and syncing health records.

Every tool returns a JSON string. Failures come back as a JSON body with a
``status`` of ``invalid`` (validation) or ``error`` (network, API, security)
instead of an MCP error, so the caller can show the reason.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from healthsync.core.errors import HealthSyncError, SecurityError, ValidationError
from healthsync.domains.records.models import (
    HealthRecord,
    Pagination,
    RecordFilter,
    RecordStatus,
    RecordType,
    UploadState,
)

if TYPE_CHECKING:
    from healthsync.core.audit.logger import AuditLogger
    from healthsync.domains.records.repository import HealthRecordsRepository

logger = logging.getLogger(__name__)


def _error(exc: BaseException) -> str:
    if isinstance(exc, ValidationError):
        return json.dumps({"status": "invalid", "violations": exc.violations})
    return json.dumps({
        "status": "error",
        "error_type": type(exc).__name__,
        "message": str(exc),
    })


def _summary(record: HealthRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "type": record.type.value,
        "date": record.date,
        "status": record.status.value,
        "version": record.version,
        "provider_id": record.provider_id,
    }


def register_record_tools(
    mcp: FastMCP,
    repository: HealthRecordsRepository,
    *,
    default_patient_id: str = "",
    default_page_size: int = 20,
) -> None:
    """Register record read/write/sync tools on the MCP server."""

    def _patient(patient_id: str) -> str:
        resolved = patient_id or default_patient_id
        if not resolved:
            raise ValidationError("patient_id is required (none configured)")
        return resolved

    @mcp.tool
    async def list_health_records(
        ctx: Context,
        patient_id: str = "",
        record_type: str = "",
        status: str = "",
        page: int = 0,
        page_size: int = 0,
        force_refresh: bool = False,
    ) -> str:
        """List one page of a patient's health records, newest first.

        Cached records are served first; the service is queried when the
        cache is empty, stale, or ``force_refresh`` is set.

        Args:
            patient_id: Patient to list (defaults to the configured patient).
            record_type: Optional type filter, e.g. 'lab_result'.
            status: Optional status filter, e.g. 'final'.
            page: 0-based page index.
            page_size: Records per page (default: server setting).
            force_refresh: Query the service even if the cache is fresh.
        """
        try:
            record_filter = RecordFilter(
                patient_id=_patient(patient_id),
                record_type=RecordType(record_type) if record_type else None,
                status=RecordStatus(status) if status else None,
            )
        except ValueError as exc:
            return _error(ValidationError(str(exc)))
        except ValidationError as exc:
            return _error(exc)

        try:
            stream = repository.get_records(
                record_filter,
                Pagination(page=page, page_size=page_size or default_page_size),
                force_refresh=force_refresh,
            )
            records = await stream.last() or []
        except HealthSyncError as exc:
            return _error(exc)

        return json.dumps({
            "status": "ok",
            "page": page,
            "count": len(records),
            "records": [_summary(record) for record in records],
        }, indent=2)

    @mcp.tool
    async def get_health_record(ctx: Context, record_id: str) -> str:
        """Return the full content of one health record.

        Args:
            record_id: The record identifier.
        """
        try:
            record = await repository.get_record(record_id)
        except HealthSyncError as exc:
            return _error(exc)
        return json.dumps({"status": "ok", "record": record.to_dict()}, indent=2)

    @mcp.tool
    async def upload_health_record(ctx: Context, record: dict) -> str:
        """Validate, store and upload a health record.

        If the service cannot be reached the record is kept encrypted on
        this device and uploaded by the next sync (status 'pending').

        Args:
            record: The record in wire format (snake_case keys).
        """
        try:
            parsed = HealthRecord.from_dict(record)
        except (ValueError, TypeError) as exc:
            return _error(ValidationError(f"Malformed record: {exc}"))

        try:
            stream = repository.upload(parsed)
        except ValidationError as exc:
            return _error(exc)

        settled = await stream.first(lambda s: s.state != UploadState.UPLOADING)
        if settled.state == UploadState.ERROR:
            return _error(settled.error or HealthSyncError("Upload failed"))
        stored = settled.record or parsed
        return json.dumps({
            "status": settled.state.value,
            "record": _summary(stored),
        })

    @mcp.tool
    async def sync_health_records(ctx: Context, patient_id: str = "") -> str:
        """Upload pending records and pull remote changes for a patient.

        Only one sync runs at a time; a second request while one is running
        returns 'already_syncing'.

        Args:
            patient_id: Patient to sync (defaults to the configured patient).
        """
        try:
            result = await repository.sync(_patient(patient_id))
        except (ValidationError, SecurityError) as exc:
            return _error(exc)
        return json.dumps(result.to_dict(), indent=2)

    @mcp.tool
    async def pending_uploads(ctx: Context, patient_id: str = "") -> str:
        """List records stored on this device that the service has not acknowledged.

        Args:
            patient_id: Patient filter (defaults to the configured patient; 'all' for every patient).
        """
        target = None if patient_id == "all" else (patient_id or default_patient_id or None)
        try:
            pending = repository.get_pending(target)
        except HealthSyncError as exc:
            return _error(exc)
        return json.dumps({
            "status": "ok",
            "count": len(pending),
            "records": [_summary(record) for record in pending],
            "open_conflicts": repository.get_conflicts(),
        }, indent=2)

    @mcp.tool
    async def resolve_record_conflict(ctx: Context, record_id: str, keep: str) -> str:
        """Settle a sync conflict held for manual resolution.

        Args:
            record_id: The conflicting record.
            keep: 'local' to re-upload this device's copy, 'remote' to take the server copy.
        """
        try:
            record = repository.resolve_conflict(record_id, keep)  # type: ignore[arg-type]
        except HealthSyncError as exc:
            return _error(exc)
        return json.dumps({"status": "resolved", "kept": keep, "record": _summary(record)})


def register_key_tools(
    mcp: FastMCP,
    repository: HealthRecordsRepository,
    *,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register key management tools on the MCP server."""

    @mcp.tool
    async def rotate_encryption_key(ctx: Context, purge_expired: bool = True) -> str:
        """Rotate the record encryption key.

        New writes use the new key version and every cached record is
        re-encrypted under it. Retired versions are purged once their grace
        period has ended and no cached record still uses them.

        Args:
            purge_expired: Also delete key versions past their grace period.
        """
        try:
            rotation = repository.rotate_key(purge_expired=purge_expired)
        except SecurityError as exc:
            return _error(exc)

        if audit_logger is not None:
            audit_logger.log_key_rotation(rotation.key_alias, rotation.version)
        logger.info("Rotated key %s to version %d", rotation.key_alias, rotation.version)
        return json.dumps({
            "status": "rotated",
            "key_alias": rotation.key_alias,
            "current_version": rotation.version,
            "records_reencrypted": rotation.reencrypted,
            "expired_versions_purged": rotation.purged,
        })
