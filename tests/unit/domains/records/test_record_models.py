"""Tests for record models and their wire format."""

from __future__ import annotations

import pytest

from conftest import make_attachment, make_record

from healthsync.domains.records.models import (
    AccessEntry,
    HealthRecord,
    RecordFilter,
    RecordMetadata,
    RecordStatus,
    RecordType,
    UploadState,
    UploadStatus,
)


class TestHealthRecord:
    def test_to_dict_uses_enum_values(self):
        data = make_record().to_dict()
        assert data["type"] == "lab_result"
        assert data["status"] == "preliminary"
        assert data["metadata"]["version"] == 1

    def test_from_dict_restores_record(self):
        record = make_record(
            attachments=[make_attachment()],
            security_labels=["R"],
            metadata=RecordMetadata(
                version=3,
                access_history=[AccessEntry("2026-01-10T10:00:00Z", "dr-1", "read")],
            ),
        )
        restored = HealthRecord.from_dict(record.to_dict())
        assert restored == record
        assert restored.version == 3
        assert restored.attachments[0].content_type == "application/pdf"

    def test_from_dict_defaults(self):
        record = HealthRecord.from_dict(
            {"id": "r", "patient_id": "p", "provider_id": "d", "type": "imaging", "date": "2026-01-01"}
        )
        assert record.status == RecordStatus.DRAFT
        assert record.metadata.version == 1
        assert record.attachments == []
        assert record.confidentiality == "normal"

    def test_unknown_type_rejected(self):
        data = make_record().to_dict()
        data["type"] = "horoscope"
        with pytest.raises(ValueError):
            HealthRecord.from_dict(data)

    def test_unknown_status_rejected(self):
        data = make_record().to_dict()
        data["status"] = "maybe"
        with pytest.raises(ValueError):
            HealthRecord.from_dict(data)


class TestRecordFilter:
    def test_scope_patient_only(self):
        assert RecordFilter("patient-1").scope == "patient:patient-1"

    def test_scope_with_filters(self):
        scope = RecordFilter("p", RecordType.IMAGING, RecordStatus.FINAL).scope
        assert scope == "patient:p|type:imaging|status:final"


class TestUploadStatus:
    def test_factories(self):
        record = make_record()
        assert UploadStatus.uploading(record).state == UploadState.UPLOADING
        assert UploadStatus.success(record).record is record
        assert UploadStatus.pending(record).state == UploadState.PENDING

        error = RuntimeError("x")
        failed = UploadStatus.failed(error)
        assert failed.state == UploadState.ERROR
        assert failed.error is error
        assert failed.record is None
