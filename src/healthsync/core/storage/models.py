"""Data models for the record cache persistence layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from healthsync.core.security.encryption import EncryptedData

# Statuses whose content may only be superseded by a new version
IMMUTABLE_STATUSES = frozenset({"final", "deleted"})


@dataclass
class CachedRecord:
    """One stored version of a health record.

    Only routing fields (patient, type, status, date) are stored in clear
    for indexed queries. The record body lives in ``encrypted``.
    """

    id: str
    patient_id: str
    record_type: str
    status: str
    record_date: str  # ISO 8601
    encrypted: EncryptedData
    version: int = 1
    last_modified: str = ""
    pending: bool = False

    @property
    def is_immutable(self) -> bool:
        return self.status in IMMUTABLE_STATUSES


@dataclass
class CacheState:
    """Freshness of a cached query scope.

    A scope that was never refreshed is expired.
    """

    scope: str
    last_refresh: datetime | None
    ttl: timedelta

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.last_refresh is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - self.last_refresh >= self.ttl
