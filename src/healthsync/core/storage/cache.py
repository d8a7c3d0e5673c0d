"""Record cache DAO: CRUD over encrypted record rows.

The cache is encryption-agnostic. Callers hand it rows whose body is
already an :class:`EncryptedData`; it never encrypts, decrypts or talks to
the network.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from healthsync.core.errors import ValidationError
from healthsync.core.security.encryption import EncryptedData
from healthsync.core.storage.database import RecordDatabase
from healthsync.core.storage.models import CachedRecord, CacheState

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGE_SIZE = 100

# Current version of each id; correlated subquery keeps history rows out
_CURRENT = (
    "version = (SELECT MAX(version) FROM cached_records latest WHERE latest.id = c.id)"
)


class CacheError(Exception):
    """Raised when a cache operation cannot be applied."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordCache:
    """Local store for encrypted health records.

    Usage::

        db = RecordDatabase(":memory:")
        db.initialize()
        cache = RecordCache(db, max_page_size=100)

        cache.insert(row)
        page = cache.get_by_patient("patient-1", page=0, page_size=20)
        pending = cache.get_pending("patient-1")
    """

    def __init__(
        self,
        database: RecordDatabase,
        *,
        max_page_size: int = DEFAULT_MAX_PAGE_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = database
        self._max_page_size = max_page_size
        self._clock = clock

    @property
    def max_page_size(self) -> int:
        return self._max_page_size

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, row: CachedRecord) -> CachedRecord:
        """Store a record that is not cached yet.

        Raises:
            CacheError: If any version of ``row.id`` already exists.
        """
        if self._current_version(row.id) is not None:
            raise CacheError(f"Record {row.id} already cached; use update()")
        stored = self._with_timestamp(row)
        self._insert_row(stored)
        self._db.connection.commit()
        logger.debug("Cached record %s v%d (pending=%s)", row.id, stored.version, row.pending)
        return stored

    def update(self, row: CachedRecord) -> CachedRecord:
        """Write a new state for a record.

        If the currently stored version is final or deleted, its content is
        kept and the new state becomes the next version. Otherwise the
        current version is overwritten. Unknown ids are inserted.

        Returns:
            The row as stored (with its effective version).
        """
        current = self.get_by_id(row.id)
        if current is None:
            stored = self._with_timestamp(row)
            self._insert_row(stored)
            self._db.connection.commit()
            return stored

        conn = self._db.connection
        if current.is_immutable:
            version = max(current.version + 1, row.version)
            stored = self._with_timestamp(row, version=version)
            self._insert_row(stored)
            logger.info(
                "Record %s is %s; stored update as new version v%d",
                row.id,
                current.status,
                version,
            )
        else:
            version = max(current.version, row.version)
            stored = self._with_timestamp(row, version=version)
            if version == current.version:
                conn.execute(
                    """UPDATE cached_records SET
                           patient_id = ?, record_type = ?, status = ?, record_date = ?,
                           encrypted_content = ?, iv = ?, key_alias = ?, key_version = ?,
                           encrypted_at = ?, last_modified = ?, pending = ?
                       WHERE id = ? AND version = ?""",
                    (
                        stored.patient_id,
                        stored.record_type,
                        stored.status,
                        stored.record_date,
                        stored.encrypted.ciphertext,
                        stored.encrypted.iv,
                        stored.encrypted.key_alias,
                        stored.encrypted.key_version,
                        stored.encrypted.timestamp,
                        stored.last_modified,
                        int(stored.pending),
                        stored.id,
                        version,
                    ),
                )
            else:
                self._insert_row(stored)
        conn.commit()
        return stored

    def set_pending(self, record_id: str, pending: bool) -> bool:
        """Flag or unflag the current version as awaiting upload.

        Returns:
            True if the record exists.
        """
        version = self._current_version(record_id)
        if version is None:
            return False
        conn = self._db.connection
        conn.execute(
            "UPDATE cached_records SET pending = ? WHERE id = ? AND version = ?",
            (int(pending), record_id, version),
        )
        conn.commit()
        return True

    def mark_synced(self, record_id: str) -> bool:
        return self.set_pending(record_id, False)

    def replace_encrypted(self, record_id: str, version: int, encrypted: EncryptedData) -> bool:
        """Swap the ciphertext of one stored version, leaving every other column as is."""
        conn = self._db.connection
        cursor = conn.execute(
            """UPDATE cached_records SET
                   encrypted_content = ?, iv = ?, key_alias = ?, key_version = ?, encrypted_at = ?
               WHERE id = ? AND version = ?""",
            (
                encrypted.ciphertext,
                encrypted.iv,
                encrypted.key_alias,
                encrypted.key_version,
                encrypted.timestamp,
                record_id,
                version,
            ),
        )
        conn.commit()
        return cursor.rowcount > 0

    def delete(self, record_id: str) -> bool:
        """Delete every stored version of a record."""
        conn = self._db.connection
        cursor = conn.execute("DELETE FROM cached_records WHERE id = ?", (record_id,))
        conn.commit()
        if cursor.rowcount:
            logger.info("Deleted cached record %s (%d versions)", record_id, cursor.rowcount)
        return cursor.rowcount > 0

    def purge_before(self, before_timestamp: str) -> int:
        """Delete synced records last modified before ``before_timestamp``.

        Pending records are never purged.

        Returns:
            Number of record ids removed.
        """
        conn = self._db.connection
        rows = conn.execute(
            f"""SELECT id FROM cached_records c
                WHERE {_CURRENT} AND pending = 0 AND last_modified < ?""",
            (before_timestamp,),
        ).fetchall()
        ids = [row["id"] for row in rows]
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        conn.execute(f"DELETE FROM cached_records WHERE id IN ({placeholders})", ids)
        conn.commit()
        logger.info("Purged %d cached records older than %s", len(ids), before_timestamp)
        return len(ids)

    def delete_all(self) -> int:
        """Delete every cached record and cache-state row."""
        conn = self._db.connection
        count = conn.execute("SELECT COUNT(DISTINCT id) FROM cached_records").fetchone()[0]
        conn.execute("DELETE FROM cached_records")
        conn.execute("DELETE FROM cache_state")
        conn.commit()
        logger.warning("Deleted ALL cached records: %d records removed", count)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, record_id: str) -> CachedRecord | None:
        """Return the current version of a record, or None."""
        row = self._db.connection.execute(
            """SELECT * FROM cached_records WHERE id = ?
               ORDER BY version DESC LIMIT 1""",
            (record_id,),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def get_history(self, record_id: str) -> list[CachedRecord]:
        """Return every stored version of a record, oldest first."""
        rows = self._db.connection.execute(
            "SELECT * FROM cached_records WHERE id = ? ORDER BY version ASC",
            (record_id,),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_by_patient(
        self,
        patient_id: str,
        page: int = 0,
        page_size: int = 20,
        *,
        record_type: str | None = None,
        status: str | None = None,
    ) -> list[CachedRecord]:
        """Return one page of current record versions, newest date first.

        Args:
            patient_id: Owner of the records.
            page: 0-based page index.
            page_size: Rows per page, 1..max_page_size.
            record_type: Optional type filter.
            status: Optional status filter.

        Raises:
            ValidationError: On a negative page or out-of-range page size.
        """
        self._check_page(page, page_size)
        conditions = ["patient_id = ?", _CURRENT]
        params: list[Any] = [patient_id]
        if record_type:
            conditions.append("record_type = ?")
            params.append(record_type)
        if status:
            conditions.append("status = ?")
            params.append(status)

        where = " AND ".join(conditions)
        query = (
            f"SELECT * FROM cached_records c WHERE {where} "
            "ORDER BY record_date DESC, id ASC LIMIT ? OFFSET ?"
        )
        params.extend([page_size, page * page_size])
        rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_pending(self, patient_id: str | None = None) -> list[CachedRecord]:
        """Return current versions awaiting upload, oldest modification first."""
        conditions = ["pending = 1", _CURRENT]
        params: list[Any] = []
        if patient_id:
            conditions.append("patient_id = ?")
            params.append(patient_id)
        where = " AND ".join(conditions)
        rows = self._db.connection.execute(
            f"SELECT * FROM cached_records c WHERE {where} ORDER BY last_modified ASC, id ASC",
            params,
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_encrypted_before(self, key_alias: str, key_version: int) -> list[CachedRecord]:
        """Return every stored version, history included, sealed with an older key version."""
        rows = self._db.connection.execute(
            """SELECT * FROM cached_records
               WHERE key_alias = ? AND key_version < ?
               ORDER BY id ASC, version ASC""",
            (key_alias, key_version),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def key_versions_in_use(self) -> set[tuple[str, int]]:
        """``(alias, version)`` pairs referenced by any stored row."""
        rows = self._db.connection.execute(
            "SELECT DISTINCT key_alias, key_version FROM cached_records"
        ).fetchall()
        return {(row["key_alias"], row["key_version"]) for row in rows}

    def count(self, patient_id: str | None = None) -> int:
        """Count distinct cached records, optionally for one patient."""
        if patient_id:
            row = self._db.connection.execute(
                "SELECT COUNT(DISTINCT id) FROM cached_records WHERE patient_id = ?",
                (patient_id,),
            ).fetchone()
        else:
            row = self._db.connection.execute(
                "SELECT COUNT(DISTINCT id) FROM cached_records"
            ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Cache state
    # ------------------------------------------------------------------

    def get_cache_state(self, scope: str, ttl: timedelta) -> CacheState:
        row = self._db.connection.execute(
            "SELECT last_refresh FROM cache_state WHERE scope = ?", (scope,)
        ).fetchone()
        last_refresh = (
            datetime.fromisoformat(row["last_refresh"])
            if row is not None and row["last_refresh"]
            else None
        )
        return CacheState(scope=scope, last_refresh=last_refresh, ttl=ttl)

    def touch_cache_state(self, scope: str, when: datetime | None = None) -> None:
        when = when or self._clock()
        conn = self._db.connection
        conn.execute(
            """INSERT INTO cache_state (scope, last_refresh) VALUES (?, ?)
               ON CONFLICT(scope) DO UPDATE SET last_refresh = excluded.last_refresh""",
            (scope, when.isoformat()),
        )
        conn.commit()

    def invalidate(self, scope: str) -> None:
        conn = self._db.connection
        conn.execute("DELETE FROM cache_state WHERE scope = ?", (scope,))
        conn.commit()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_page(self, page: int, page_size: int) -> None:
        if page < 0:
            raise ValidationError(f"Page must be >= 0, got {page}")
        if page_size < 1 or page_size > self._max_page_size:
            raise ValidationError(
                f"Page size must be between 1 and {self._max_page_size}, got {page_size}"
            )

    def _current_version(self, record_id: str) -> int | None:
        row = self._db.connection.execute(
            "SELECT MAX(version) FROM cached_records WHERE id = ?", (record_id,)
        ).fetchone()
        return row[0]

    def _with_timestamp(self, row: CachedRecord, *, version: int | None = None) -> CachedRecord:
        return CachedRecord(
            id=row.id,
            patient_id=row.patient_id,
            record_type=row.record_type,
            status=row.status,
            record_date=row.record_date,
            encrypted=row.encrypted,
            version=version if version is not None else row.version,
            last_modified=row.last_modified or self._clock().isoformat(),
            pending=row.pending,
        )

    def _insert_row(self, row: CachedRecord) -> None:
        try:
            self._db.connection.execute(
                """INSERT INTO cached_records (
                    id, version, patient_id, record_type, status, record_date,
                    encrypted_content, iv, key_alias, key_version, encrypted_at,
                    last_modified, pending
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    row.id,
                    row.version,
                    row.patient_id,
                    row.record_type,
                    row.status,
                    row.record_date,
                    row.encrypted.ciphertext,
                    row.encrypted.iv,
                    row.encrypted.key_alias,
                    row.encrypted.key_version,
                    row.encrypted.timestamp,
                    row.last_modified,
                    int(row.pending),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise CacheError(f"Record {row.id} v{row.version} already stored") from exc

    @staticmethod
    def _row_to_record(row: Any) -> CachedRecord:
        return CachedRecord(
            id=row["id"],
            patient_id=row["patient_id"],
            record_type=row["record_type"],
            status=row["status"],
            record_date=row["record_date"],
            encrypted=EncryptedData(
                ciphertext=bytes(row["encrypted_content"]),
                iv=bytes(row["iv"]),
                key_alias=row["key_alias"],
                key_version=row["key_version"],
                timestamp=row["encrypted_at"],
            ),
            version=row["version"],
            last_modified=row["last_modified"],
            pending=bool(row["pending"]),
        )
