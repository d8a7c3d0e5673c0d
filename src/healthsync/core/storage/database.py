"""SQLite database management for the encrypted record cache.

Handles connection lifecycle, schema creation, and migrations.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- One row per stored record version; the highest version is current
CREATE TABLE IF NOT EXISTS cached_records (
    id                TEXT NOT NULL,
    version           INTEGER NOT NULL,
    patient_id        TEXT NOT NULL,
    record_type       TEXT NOT NULL,
    status            TEXT NOT NULL,
    record_date       TEXT NOT NULL,

    -- AES-GCM payload produced by the caller (cache is encryption-agnostic)
    encrypted_content BLOB NOT NULL,
    iv                BLOB NOT NULL,
    key_alias         TEXT NOT NULL,
    key_version       INTEGER NOT NULL,
    encrypted_at      INTEGER NOT NULL,

    last_modified     TEXT NOT NULL,
    pending           INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (id, version)
);

-- Read-through freshness per query scope (e.g. 'patient:<id>')
CREATE TABLE IF NOT EXISTS cache_state (
    scope        TEXT PRIMARY KEY,
    last_refresh TEXT
);

-- Last successful sync per entity
CREATE TABLE IF NOT EXISTS sync_state (
    entity_id TEXT PRIMARY KEY,
    last_sync TEXT NOT NULL
);

-- Key version registry (per alias)
CREATE TABLE IF NOT EXISTS key_versions (
    alias      TEXT NOT NULL,
    version    INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    retired_at TEXT,
    expires_at TEXT,
    PRIMARY KEY (alias, version)
);

-- Data keys wrapped with the master key
CREATE TABLE IF NOT EXISTS wrapped_keys (
    key_id     TEXT PRIMARY KEY,
    wrapped    TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_records_patient ON cached_records(patient_id);
CREATE INDEX IF NOT EXISTS idx_records_pending ON cached_records(patient_id, pending);
CREATE INDEX IF NOT EXISTS idx_records_date    ON cached_records(record_date);
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (HIPAA access logging, no PHI)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id            TEXT PRIMARY KEY,
    timestamp     TEXT NOT NULL DEFAULT (datetime('now')),
    action        TEXT NOT NULL,
    record_id     TEXT,
    patient_hash  TEXT,
    key_alias     TEXT,
    key_version   INTEGER,
    duration_ms   REAL,
    status        TEXT NOT NULL DEFAULT 'success',
    error_type    TEXT,
    metadata_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_record    ON audit_log(record_id);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class RecordDatabase:
    """SQLite database manager for the record cache.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    Usage::

        db = RecordDatabase(":memory:")
        db.initialize()
        conn = db.connection
        # ... use connection ...
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_file))
        else:
            self._conn = sqlite3.connect(":memory:")

        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._ensure_schema()
        logger.info("Record cache database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        conn.executescript(_SCHEMA_V1)

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] is not None else 0

        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: audit_log table")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        cursor = self.connection.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Record cache database closed")

    def __enter__(self) -> RecordDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
