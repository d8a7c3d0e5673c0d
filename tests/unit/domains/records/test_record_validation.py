"""Tests for RecordValidator."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import make_attachment, make_record

from healthsync.core.errors import ValidationError
from healthsync.domains.records.models import RecordMetadata
from healthsync.domains.records.validation import RecordValidator, parse_record_date

NOW = datetime(2026, 6, 1, 12, tzinfo=timezone.utc)


@pytest.fixture
def validator() -> RecordValidator:
    return RecordValidator(max_attachments=2, max_attachment_size_mb=1, clock=lambda: NOW)


class TestParseRecordDate:
    def test_date_only_is_midnight_utc(self):
        assert parse_record_date("2026-01-10") == datetime(2026, 1, 10, tzinfo=timezone.utc)

    def test_zulu(self):
        assert parse_record_date("2026-01-10T08:30:00Z").tzinfo is not None

    def test_naive_is_utc(self):
        assert parse_record_date("2026-01-10T08:30:00").tzinfo == timezone.utc

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_record_date("last tuesday")


class TestValidator:
    def test_valid_record(self, validator):
        validator.validate(make_record(attachments=[make_attachment()]))

    def test_required_ids(self, validator):
        problems = validator.violations(make_record(id="", patient_id=" ", provider_id=""))
        assert "id is required" in problems
        assert "patient_id is required" in problems
        assert "provider_id is required" in problems

    def test_future_date(self, validator):
        problems = validator.violations(make_record(date="2026-06-02"))
        assert problems == ["date must not be in the future"]

    def test_bad_date(self, validator):
        problems = validator.violations(make_record(date="10/01/2026"))
        assert any("ISO 8601" in p for p in problems)

    def test_missing_date(self, validator):
        assert "date is required" in validator.violations(make_record(date=""))

    def test_unknown_enum_values(self, validator):
        problems = validator.violations(make_record(type="horoscope", status="maybe"))
        assert any("record type" in p for p in problems)
        assert any("record status" in p for p in problems)

    def test_enum_strings_accepted(self, validator):
        assert validator.violations(make_record(type="imaging", status="final")) == []

    def test_version_below_one(self, validator):
        problems = validator.violations(make_record(metadata=RecordMetadata(version=0)))
        assert problems == ["metadata.version must be >= 1"]

    def test_too_many_attachments(self, validator):
        attachments = [make_attachment(id=f"att-{i}") for i in range(3)]
        problems = validator.violations(make_record(attachments=attachments))
        assert problems == ["Too many attachments: 3 > 2"]

    def test_attachment_too_large(self, validator):
        big = make_attachment(size=1024 * 1024 + 1)
        assert validator.violations(make_record(attachments=[big])) == [
            "Attachment att-1 exceeds the size limit"
        ]

    def test_attachment_negative_size(self, validator):
        problems = validator.violations(make_record(attachments=[make_attachment(size=-1)]))
        assert problems == ["Attachment att-1 has a negative size"]

    def test_unsupported_mime(self, validator):
        bad = make_attachment(content_type="application/x-msdownload")
        problems = validator.violations(make_record(attachments=[bad]))
        assert len(problems) == 1
        assert "unsupported type" in problems[0]

    def test_validate_collects_everything(self, validator):
        record = make_record(id="", date="2030-01-01", attachments=[make_attachment(size=-5)])
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(record)
        assert len(exc_info.value.violations) == 3
