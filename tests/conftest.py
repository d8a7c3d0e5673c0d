"""Shared test fixtures for healthsync tests."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("MASTER_KEY", "")
    monkeypatch.setenv("API_ACCESS_TOKEN", "")
    monkeypatch.setenv("API_BASE_URL", "https://records.test")
    monkeypatch.setenv("PATIENT_ID", "")
    monkeypatch.setenv("ALLOW_SOFTWARE_KEYS", "true")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from healthsync.core.audit.logger import AuditLogger  # noqa: E402
from healthsync.core.auth.providers import StaticTokenAuth  # noqa: E402
from healthsync.core.network.circuit_breaker import CircuitBreaker  # noqa: E402
from healthsync.core.network.client import ApiClient, RetryPolicy  # noqa: E402
from healthsync.core.network.monitor import ConnectivityMonitor  # noqa: E402
from healthsync.core.security.encryption import EncryptionManager  # noqa: E402
from healthsync.core.security.key_providers import SoftwareFallbackProvider  # noqa: E402
from healthsync.core.storage.cache import RecordCache  # noqa: E402
from healthsync.core.storage.database import RecordDatabase  # noqa: E402
from healthsync.domains.records.models import (  # noqa: E402
    Attachment,
    HealthRecord,
    RecordMetadata,
    RecordStatus,
    RecordType,
)
from healthsync.domains.records.repository import HealthRecordsRepository  # noqa: E402
from healthsync.domains.records.service import HealthRecordsService  # noqa: E402
from healthsync.domains.records.sync import SyncManager  # noqa: E402

BASE_URL = "https://records.test"
RECORDS_URL_PATH = "/api/v1/health-records/fhir/r4"


def make_record(**overrides: Any) -> HealthRecord:
    """Create a test record with sensible defaults."""
    defaults: dict[str, Any] = dict(
        id="rec-1",
        patient_id="patient-1",
        provider_id="dr-1",
        type=RecordType.LAB_RESULT,
        date="2026-01-10",
        content={"test_name": "Fasting Glucose", "value": 95.0, "unit": "mg/dL"},
        metadata=RecordMetadata(version=1, created_at="2026-01-10T09:00:00+00:00", created_by="dr-1"),
        status=RecordStatus.PRELIMINARY,
    )
    defaults.update(overrides)
    return HealthRecord(**defaults)


def make_attachment(**overrides: Any) -> Attachment:
    defaults: dict[str, Any] = dict(
        id="att-1",
        type="report",
        title="Lab report",
        content_type="application/pdf",
        size=1024,
    )
    defaults.update(overrides)
    return Attachment(**defaults)


# ---------------------------------------------------------------------------
# Fake remote records API (httpx.MockTransport handler)
# ---------------------------------------------------------------------------

class FakeRecordsApi:
    """In-memory stand-in for the remote FHIR records endpoints.

    ``online = False`` makes every request fail with a connection error;
    ``fail_status`` makes every request return that HTTP status;
    ``upload_status`` does the same for POSTs only.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.updated_at: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.online = True
        self.fail_status: int | None = None
        self.upload_status: int | None = None
        self.bump_version_on_upload = False

    def put(self, record: HealthRecord) -> None:
        """Store a record as if another client had written it."""
        self.records[record.id] = record.to_dict()
        self.updated_at[record.id] = datetime.now(timezone.utc).isoformat()

    @property
    def uploads(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.online:
            raise httpx.ConnectError("Connection refused", request=request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "unavailable"})
        if request.method == "POST" and self.upload_status is not None:
            return httpx.Response(self.upload_status, json={"error": "rejected"})

        path = request.url.path
        if request.method == "GET" and path == RECORDS_URL_PATH:
            params = request.url.params
            patient_id = params.get("patient_id")
            updated_after = params.get("updated_after")
            page = int(params.get("page", 0))
            size = int(params.get("size", 20))
            matches = [
                data for rid, data in sorted(self.records.items())
                if data["patient_id"] == patient_id
                and (not updated_after or self.updated_at[rid] > updated_after)
            ]
            chunk = matches[page * size:(page + 1) * size]
            return httpx.Response(200, json={
                "data": chunk,
                "page": page,
                "total": len(matches),
                "has_more": (page + 1) * size < len(matches),
            })

        if request.method == "GET" and path.startswith(RECORDS_URL_PATH + "/"):
            record_id = path.rsplit("/", 1)[-1]
            if record_id not in self.records:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=self.records[record_id])

        if request.method == "POST" and path == RECORDS_URL_PATH + "/batch":
            body = json.loads(request.content)
            for data in body["records"]:
                self._accept(data)
            return httpx.Response(201, json={"data": body["records"]})

        if request.method == "POST" and path == RECORDS_URL_PATH:
            data = json.loads(request.content)
            return httpx.Response(201, json=self._accept(data))

        return httpx.Response(404, json={"error": "unknown route"})

    def _accept(self, data: dict[str, Any]) -> dict[str, Any]:
        if self.bump_version_on_upload:
            data["metadata"]["version"] = data["metadata"].get("version", 1) + 1
        self.records[data["id"]] = data
        self.updated_at[data["id"]] = datetime.now(timezone.utc).isoformat()
        return data


async def _no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# In-memory storage and service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def record_db():
    """Create an in-memory RecordDatabase for testing."""
    db = RecordDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def encryption(record_db) -> EncryptionManager:
    return EncryptionManager(
        SoftwareFallbackProvider(),
        database=record_db,
        allow_software_keys=True,
    )


@pytest.fixture
def cache(record_db) -> RecordCache:
    return RecordCache(record_db)


@pytest.fixture
def audit_logger(record_db) -> AuditLogger:
    return AuditLogger(record_db)


@pytest.fixture
def fake_api() -> FakeRecordsApi:
    return FakeRecordsApi()


@pytest.fixture
def auth() -> StaticTokenAuth:
    return StaticTokenAuth("test-token")


@pytest.fixture
def api_client(fake_api, auth) -> ApiClient:
    return ApiClient(
        BASE_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_api)),
        circuit_breaker=CircuitBreaker(failure_threshold=5, cooldown_seconds=30.0),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
        auth=auth,
        sleep=_no_sleep,
    )


@pytest.fixture
def service(api_client) -> HealthRecordsService:
    return HealthRecordsService(api_client)


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def sync_manager(record_db, cache, audit_logger) -> SyncManager:
    return SyncManager(record_db, cache, audit=audit_logger)


@pytest.fixture
def repository(cache, encryption, service, sync_manager, auth, audit_logger, monitor) -> HealthRecordsRepository:
    return HealthRecordsRepository(
        cache=cache,
        encryption=encryption,
        service=service,
        sync_manager=sync_manager,
        auth=auth,
        audit=audit_logger,
        monitor=monitor,
    )
