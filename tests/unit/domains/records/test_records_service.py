"""Tests for HealthRecordsService against a mocked records API."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import FakeRecordsApi, make_record

from healthsync.core.errors import ApiError, NetworkError
from healthsync.core.network.client import ApiClient, RetryPolicy
from healthsync.domains.records.service import (
    MAX_RECORDS_PER_REQUEST,
    HealthRecordsService,
)


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _service_for(handler) -> HealthRecordsService:
    client = ApiClient(
        "https://records.test",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_policy=RetryPolicy(max_attempts=1),
    )
    return HealthRecordsService(client)


class TestGetPatientRecords:
    def test_query_params(self, service, fake_api):
        fake_api.put(make_record())
        page = _run(service.get_patient_records(
            "patient-1", 0, 20, updated_after="2026-01-01T00:00:00+00:00",
            record_type="lab_result", status="final",
        ))
        params = fake_api.requests[0].url.params
        assert params["patient_id"] == "patient-1"
        assert params["size"] == "20"
        assert params["type"] == "lab_result"
        assert params["status"] == "final"
        assert params["updated_after"] == "2026-01-01T00:00:00+00:00"
        assert page.page == 0

    def test_envelope(self, service, fake_api):
        for i in range(3):
            fake_api.put(make_record(id=f"rec-{i}"))
        page = _run(service.get_patient_records("patient-1", 0, 2))
        assert [r.id for r in page.records] == ["rec-0", "rec-1"]
        assert page.total == 3
        assert page.has_more is True

    def test_page_size_capped(self, service, fake_api):
        _run(service.get_patient_records("patient-1", 0, 500))
        assert fake_api.requests[0].url.params["size"] == str(MAX_RECORDS_PER_REQUEST)

    def test_bare_list_body(self):
        body = [make_record().to_dict()]
        service = _service_for(lambda request: httpx.Response(200, json=body))
        page = _run(service.get_patient_records("patient-1", 0, 20))
        assert len(page.records) == 1
        assert page.has_more is False

    def test_total_pages(self):
        body = {"data": [make_record().to_dict()], "page": 0, "total_pages": 3}
        service = _service_for(lambda request: httpx.Response(200, json=body))
        assert _run(service.get_patient_records("patient-1", 0, 1)).has_more is True

    def test_malformed_record(self):
        body = {"data": [{"id": "x", "type": "horoscope"}]}
        service = _service_for(lambda request: httpx.Response(200, json=body))
        with pytest.raises(ApiError, match="Malformed"):
            _run(service.get_patient_records("patient-1"))

    def test_unexpected_payload(self):
        service = _service_for(lambda request: httpx.Response(200, text="hello"))
        with pytest.raises(ApiError):
            _run(service.get_patient_records("patient-1"))


class TestUpdatedSince:
    def test_walks_every_page(self, service, fake_api):
        for i in range(MAX_RECORDS_PER_REQUEST + 5):
            fake_api.put(make_record(id=f"rec-{i:03d}"))
        records = _run(service.get_updated_since("patient-1", None))
        assert len(records) == MAX_RECORDS_PER_REQUEST + 5
        assert len(fake_api.requests) == 2

    def test_filters_by_timestamp(self, service, fake_api):
        fake_api.put(make_record(id="old"))
        fake_api.updated_at["old"] = "2026-01-01T00:00:00+00:00"
        fake_api.put(make_record(id="new"))
        fake_api.updated_at["new"] = "2026-03-01T00:00:00+00:00"
        records = _run(service.get_updated_since("patient-1", "2026-02-01T00:00:00+00:00"))
        assert [r.id for r in records] == ["new"]


class TestSingleRecord:
    def test_get_record(self, service, fake_api):
        fake_api.put(make_record(id="rec-7"))
        assert _run(service.get_record("rec-7")).id == "rec-7"

    def test_get_missing_record(self, service):
        with pytest.raises(ApiError) as exc_info:
            _run(service.get_record("nope"))
        assert exc_info.value.status_code == 404

    def test_upload_returns_server_copy(self, service, fake_api):
        fake_api.bump_version_on_upload = True
        stored = _run(service.upload_record(make_record()))
        assert stored.version == 2
        assert json.loads(fake_api.uploads[0].content)["id"] == "rec-1"

    def test_upload_empty_body_returns_local(self):
        service = _service_for(lambda request: httpx.Response(204))
        record = make_record()
        assert _run(service.upload_record(record)) is record

    def test_upload_offline(self, service, fake_api):
        fake_api.online = False
        with pytest.raises(NetworkError):
            _run(service.upload_record(make_record()))


class TestWearableBatch:
    def test_chunks(self, service, fake_api):
        records = [make_record(id=f"w-{i}") for i in range(MAX_RECORDS_PER_REQUEST + 1)]
        accepted = _run(service.upload_wearable_batch(records))
        assert len(accepted) == MAX_RECORDS_PER_REQUEST + 1
        assert len(fake_api.uploads) == 2
        assert fake_api.uploads[0].url.path.endswith("/batch")

    def test_empty_batch(self, service, fake_api):
        assert _run(service.upload_wearable_batch([])) == []
        assert fake_api.requests == []
