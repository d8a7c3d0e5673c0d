"""Health record models and their snake_case wire format."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RecordType(str, Enum):
    CONSULTATION = "consultation"
    LAB_RESULT = "lab_result"
    PRESCRIPTION = "prescription"
    IMAGING = "imaging"
    VITAL_SIGNS = "vital_signs"
    WEARABLE_DATA = "wearable_data"
    IMMUNIZATION = "immunization"
    PROCEDURE = "procedure"
    CONDITION = "condition"
    MEDICATION = "medication"


class RecordStatus(str, Enum):
    DRAFT = "draft"
    PRELIMINARY = "preliminary"
    FINAL = "final"
    AMENDED = "amended"
    DELETED = "deleted"
    ENTERED_IN_ERROR = "entered_in_error"


@dataclass
class AccessEntry:
    """One line of a record's access history."""

    timestamp: str
    user_id: str
    action: str
    ip_address: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "user_id": self.user_id,
            "action": self.action,
            "ip_address": self.ip_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessEntry:
        return cls(
            timestamp=data.get("timestamp", ""),
            user_id=data.get("user_id", ""),
            action=data.get("action", ""),
            ip_address=data.get("ip_address"),
        )


@dataclass
class Attachment:
    id: str
    type: str
    title: str
    content_type: str
    size: int                        # bytes
    url: str = ""
    uploaded_at: str = ""
    uploaded_by: str = ""
    checksum: str = ""
    access_control: list[str] = field(default_factory=list)
    retention_period: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "content_type": self.content_type,
            "size": self.size,
            "url": self.url,
            "uploaded_at": self.uploaded_at,
            "uploaded_by": self.uploaded_by,
            "checksum": self.checksum,
            "access_control": list(self.access_control),
            "retention_period": self.retention_period,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            id=data.get("id", ""),
            type=data.get("type", ""),
            title=data.get("title", ""),
            content_type=data.get("content_type", ""),
            size=int(data.get("size", 0)),
            url=data.get("url", ""),
            uploaded_at=data.get("uploaded_at", ""),
            uploaded_by=data.get("uploaded_by", ""),
            checksum=data.get("checksum", ""),
            access_control=list(data.get("access_control") or []),
            retention_period=data.get("retention_period", ""),
        )


@dataclass
class RecordMetadata:
    version: int = 1
    created_at: str = ""
    created_by: str = ""
    updated_at: str = ""
    updated_by: str = ""
    facility: str = ""
    department: str = ""
    access_history: list[AccessEntry] = field(default_factory=list)
    encryption_status: bool = True
    data_retention_policy: str = ""
    compliance_flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
            "facility": self.facility,
            "department": self.department,
            "access_history": [entry.to_dict() for entry in self.access_history],
            "encryption_status": self.encryption_status,
            "data_retention_policy": self.data_retention_policy,
            "compliance_flags": list(self.compliance_flags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RecordMetadata:
        data = data or {}
        return cls(
            version=int(data.get("version", 1)),
            created_at=data.get("created_at", ""),
            created_by=data.get("created_by", ""),
            updated_at=data.get("updated_at", ""),
            updated_by=data.get("updated_by", ""),
            facility=data.get("facility", ""),
            department=data.get("department", ""),
            access_history=[
                AccessEntry.from_dict(entry) for entry in data.get("access_history") or []
            ],
            encryption_status=bool(data.get("encryption_status", True)),
            data_retention_policy=data.get("data_retention_policy", ""),
            compliance_flags=list(data.get("compliance_flags") or []),
        )


@dataclass
class HealthRecord:
    """A clinical record. ``content`` is opaque JSON and is encrypted at rest."""

    id: str
    patient_id: str
    provider_id: str
    type: RecordType
    date: str                        # ISO 8601 date or datetime
    content: dict[str, Any] = field(default_factory=dict)
    metadata: RecordMetadata = field(default_factory=RecordMetadata)
    attachments: list[Attachment] = field(default_factory=list)
    status: RecordStatus = RecordStatus.DRAFT
    security_labels: list[str] = field(default_factory=list)
    confidentiality: str = "normal"

    @property
    def version(self) -> int:
        return self.metadata.version

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "provider_id": self.provider_id,
            "type": _enum_value(self.type),
            "date": self.date,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "attachments": [attachment.to_dict() for attachment in self.attachments],
            "status": _enum_value(self.status),
            "security_labels": list(self.security_labels),
            "confidentiality": self.confidentiality,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthRecord:
        """Parse the wire format.

        Raises:
            ValueError: If ``type`` or ``status`` is not a known value.
        """
        return cls(
            id=data.get("id", ""),
            patient_id=data.get("patient_id", ""),
            provider_id=data.get("provider_id", ""),
            type=RecordType(data.get("type")),
            date=data.get("date", ""),
            content=dict(data.get("content") or {}),
            metadata=RecordMetadata.from_dict(data.get("metadata")),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
            status=RecordStatus(data.get("status", RecordStatus.DRAFT.value)),
            security_labels=list(data.get("security_labels") or []),
            confidentiality=data.get("confidentiality", "normal"),
        )


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ---------------------------------------------------------------------------
# Query and result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecordFilter:
    patient_id: str
    record_type: RecordType | None = None
    status: RecordStatus | None = None

    @property
    def scope(self) -> str:
        """Cache-state key for this query."""
        parts = [f"patient:{self.patient_id}"]
        if self.record_type is not None:
            parts.append(f"type:{self.record_type.value}")
        if self.status is not None:
            parts.append(f"status:{self.status.value}")
        return "|".join(parts)


@dataclass(frozen=True)
class Pagination:
    page: int = 0          # 0-based
    page_size: int = 20


@dataclass
class RecordPage:
    """One page of records as returned by the remote service."""

    records: list[HealthRecord]
    page: int = 0
    page_size: int = 20
    total: int | None = None
    has_more: bool = False


class UploadState(str, Enum):
    UPLOADING = "uploading"
    SUCCESS = "success"
    PENDING = "pending"
    ERROR = "error"


@dataclass
class UploadStatus:
    """One step of an upload.

    ``record`` is the server copy on SUCCESS and the local copy on PENDING.
    ``error`` is set on ERROR only.
    """

    state: UploadState
    record: HealthRecord | None = None
    error: BaseException | None = None

    @classmethod
    def uploading(cls, record: HealthRecord) -> UploadStatus:
        return cls(UploadState.UPLOADING, record)

    @classmethod
    def success(cls, record: HealthRecord) -> UploadStatus:
        return cls(UploadState.SUCCESS, record)

    @classmethod
    def pending(cls, record: HealthRecord) -> UploadStatus:
        return cls(UploadState.PENDING, record)

    @classmethod
    def failed(cls, error: BaseException, record: HealthRecord | None = None) -> UploadStatus:
        return cls(UploadState.ERROR, record, error)
