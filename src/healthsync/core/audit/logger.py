"""Audit logger: HIPAA-aligned access logging for the record cache.

Records every record read, upload, sync cycle, key rotation and security
failure in a PHI-free audit trail:

* ``patient_hash``: SHA-256 of the patient id, never the id itself.
* ``record_id``: opaque record identifier (no content).
* ``key_alias`` / ``key_version``: which key generation was involved.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from healthsync.core.storage.database import RecordDatabase

logger = logging.getLogger(__name__)

ACTION_RECORD_ACCESS = "record_access"
ACTION_RECORD_UPLOAD = "record_upload"
ACTION_SYNC = "sync_cycle"
ACTION_KEY_ROTATION = "key_rotation"
ACTION_SECURITY_FAILURE = "security_failure"
ACTION_DATA_DELETE = "data_delete"


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON, so no PHI is stored in audit logs.

    Returns:
        Hex-encoded SHA-256 digest, or empty string on failure.
    """
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str
    record_id: str | None = None
    patient_hash: str = ""
    key_alias: str | None = None
    key_version: int | None = None
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure' | 'pending'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    All writes are committed immediately so no audit entry is lost on crash.

    Usage::

        audit = AuditLogger(record_db)
        audit.log_record_upload("rec-1", "patient-1", status="pending")
    """

    def __init__(self, database: RecordDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID (empty string on failure)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, record_id, patient_hash, key_alias,
                    key_version, duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.record_id,
                    event.patient_hash or None,
                    event.key_alias,
                    event.key_version,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except Exception:
            logger.exception("Failed to write audit event; event lost")
            return ""

        return event_id

    def log_record_access(
        self,
        patient_id: str,
        *,
        record_ids: list[str] | None = None,
        source: str = "cache",
    ) -> str:
        """Log a read of one or more records for a patient."""
        ids = record_ids or []
        return self.log_event(AuditEvent(
            action=ACTION_RECORD_ACCESS,
            record_id=ids[0] if len(ids) == 1 else None,
            patient_hash=_hash_input(patient_id),
            metadata={"source": source, "record_count": len(ids)},
        ))

    def log_record_upload(
        self,
        record_id: str,
        patient_id: str,
        *,
        status: str = "success",
        error_type: str | None = None,
        duration_ms: float | None = None,
    ) -> str:
        return self.log_event(AuditEvent(
            action=ACTION_RECORD_UPLOAD,
            record_id=record_id,
            patient_hash=_hash_input(patient_id),
            status=status,
            error_type=error_type,
            duration_ms=duration_ms,
        ))

    def log_sync(
        self,
        entity_id: str,
        *,
        status: str,
        uploaded: int = 0,
        failed: int = 0,
        merged: int = 0,
        conflicts: int = 0,
        duration_ms: float | None = None,
        error_type: str | None = None,
    ) -> str:
        return self.log_event(AuditEvent(
            action=ACTION_SYNC,
            patient_hash=_hash_input(entity_id),
            status=status,
            error_type=error_type,
            duration_ms=duration_ms,
            metadata={
                "uploaded": uploaded,
                "failed_uploads": failed,
                "merged": merged,
                "conflicts": conflicts,
            },
        ))

    def log_key_rotation(self, alias: str, new_version: int | None) -> str:
        return self.log_event(AuditEvent(
            action=ACTION_KEY_ROTATION,
            key_alias=alias,
            key_version=new_version,
        ))

    def log_security_failure(
        self,
        error: BaseException,
        *,
        record_id: str | None = None,
        key_alias: str | None = None,
    ) -> str:
        return self.log_event(AuditEvent(
            action=ACTION_SECURITY_FAILURE,
            record_id=record_id,
            key_alias=key_alias,
            status="failure",
            error_type=type(error).__name__,
        ))

    def log_data_delete(self, *, record_id: str | None = None, count: int = 0) -> str:
        return self.log_event(AuditEvent(
            action=ACTION_DATA_DELETE,
            record_id=record_id,
            metadata={"records_deleted": count},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        record_id: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if record_id:
            conditions.append("record_id = ?")
            params.append(record_id)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count audit events, optionally by action and since a timestamp."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]
