"""Record validation gate.

Runs before any cache or network work. Collects every violation and raises
one :class:`ValidationError` listing them all.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable

from healthsync.core.errors import ValidationError
from healthsync.domains.records.models import HealthRecord, RecordStatus, RecordType

DEFAULT_MAX_ATTACHMENTS = 10
DEFAULT_MAX_ATTACHMENT_SIZE_MB = 50
DEFAULT_MIME_TYPES = (
    "application/pdf",
    "image/jpeg",
    "image/png",
    "application/dicom",
)


def parse_record_date(value: str) -> datetime:
    """Parse an ISO 8601 date or datetime. Naive values are taken as UTC.

    Raises:
        ValueError: If the string is not ISO 8601.
    """
    if len(value) == 10:
        parsed_date = date.fromisoformat(value)
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecordValidator:
    """Checks a :class:`HealthRecord` against the upload rules.

    Usage::

        validator = RecordValidator(max_attachments=10)
        validator.validate(record)   # raises ValidationError
    """

    def __init__(
        self,
        *,
        max_attachments: int = DEFAULT_MAX_ATTACHMENTS,
        max_attachment_size_mb: int = DEFAULT_MAX_ATTACHMENT_SIZE_MB,
        supported_mime_types: tuple[str, ...] | list[str] = DEFAULT_MIME_TYPES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.max_attachments = max_attachments
        self.max_attachment_bytes = max_attachment_size_mb * 1024 * 1024
        self.supported_mime_types = frozenset(supported_mime_types)
        self._clock = clock

    def violations(self, record: HealthRecord) -> list[str]:
        """Return every rule the record breaks (empty when valid)."""
        problems: list[str] = []

        for name in ("id", "patient_id", "provider_id"):
            if not str(getattr(record, name) or "").strip():
                problems.append(f"{name} is required")

        if not _is_member(record.type, RecordType):
            problems.append(f"Unknown record type: {record.type!r}")
        if not _is_member(record.status, RecordStatus):
            problems.append(f"Unknown record status: {record.status!r}")

        if not record.date:
            problems.append("date is required")
        else:
            try:
                when = parse_record_date(record.date)
            except ValueError:
                problems.append(f"date is not ISO 8601: {record.date!r}")
            else:
                if when > self._clock():
                    problems.append("date must not be in the future")

        if record.metadata.version < 1:
            problems.append("metadata.version must be >= 1")

        if len(record.attachments) > self.max_attachments:
            problems.append(
                f"Too many attachments: {len(record.attachments)} > {self.max_attachments}"
            )
        for attachment in record.attachments:
            if attachment.size > self.max_attachment_bytes:
                problems.append(f"Attachment {attachment.id} exceeds the size limit")
            if attachment.size < 0:
                problems.append(f"Attachment {attachment.id} has a negative size")
            if attachment.content_type not in self.supported_mime_types:
                problems.append(
                    f"Attachment {attachment.id} has unsupported type {attachment.content_type!r}"
                )

        return problems

    def validate(self, record: HealthRecord) -> None:
        problems = self.violations(record)
        if problems:
            raise ValidationError(problems)


def _is_member(value: object, enum_cls: type) -> bool:
    if isinstance(value, enum_cls):
        return True
    try:
        enum_cls(value)
    except ValueError:
        return False
    return True
