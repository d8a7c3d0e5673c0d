"""Integration tests for the healthsync MCP server."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from fastmcp import Client

from conftest import BASE_URL, FakeRecordsApi, make_record

from healthsync.core.auth.providers import StaticTokenAuth
from healthsync.core.config.settings import Settings
from healthsync.core.errors import SecurityError
from healthsync.core.security.key_providers import (
    MasterKeyWrapper,
    SoftwareFallbackProvider,
    WrappedKeyProvider,
)
from healthsync.core.server.app import build_services, create_app
from healthsync.core.server.main import _is_loopback_host


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _payload(result) -> dict:
    """Decode the JSON text a tool returned."""
    content = getattr(result, "content", result)
    return json.loads(content[0].text)


ALL_EXPECTED_TOOLS = [
    "health_check",
    "list_health_records",
    "get_health_record",
    "upload_health_record",
    "sync_health_records",
    "pending_uploads",
    "resolve_record_conflict",
    "rotate_encryption_key",
    "purge_cached_records",
    "delete_all_cached_records",
    "audit_summary",
    "sync_wearables",
]


def _settings(**overrides) -> Settings:
    values = dict(
        api_base_url=BASE_URL,
        api_max_retries=1,
        api_retry_base_delay=0.0,
        db_path=":memory:",
        allow_software_keys=True,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def services(fake_api: FakeRecordsApi):
    return build_services(
        _settings(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_api)),
        auth=StaticTokenAuth("test-token"),
    )


@pytest.fixture
def client(services):
    return Client(create_app(services=services))


def _call(client, tool: str, args: dict | None = None) -> dict:
    async def _go():
        async with client:
            return _payload(await client.call_tool(tool, args or {}))
    return _run(_go())


def test_server_starts_and_lists_tools(client):
    """Server should start and expose all registered tools."""
    async def _check():
        async with client:
            tools = await client.list_tools()
            tool_names = [t.name for t in tools]
            for expected in ALL_EXPECTED_TOOLS:
                assert expected in tool_names, f"Missing tool: {expected}"
    _run(_check())


def test_health_check_returns_ok(client):
    body = _call(client, "health_check")
    assert body["status"] == "ok"
    assert body["online"] is True
    assert body["circuit_state"] == "closed"
    assert body["sync_state"] == "idle"
    assert body["cached_records"] == 0
    assert body["hardware_backed_keys"] is False


class TestRecordTools:
    def test_upload_list_get(self, client, fake_api):
        async def _flow():
            async with client:
                uploaded = _payload(await client.call_tool(
                    "upload_health_record", {"record": make_record().to_dict()}
                ))
                listed = _payload(await client.call_tool(
                    "list_health_records", {"patient_id": "patient-1"}
                ))
                fetched = _payload(await client.call_tool(
                    "get_health_record", {"record_id": "rec-1"}
                ))
                return uploaded, listed, fetched

        uploaded, listed, fetched = _run(_flow())
        assert uploaded["status"] == "success"
        assert listed["count"] == 1
        assert listed["records"][0]["id"] == "rec-1"
        assert fetched["record"]["content"]["test_name"] == "Fasting Glucose"
        assert "rec-1" in fake_api.records

    def test_invalid_upload(self, client, fake_api):
        body = _call(client, "upload_health_record", {
            "record": make_record(date="2999-01-01").to_dict(),
        })
        assert body["status"] == "invalid"
        assert body["violations"] == ["date must not be in the future"]
        assert fake_api.requests == []

    def test_malformed_upload(self, client):
        record = make_record().to_dict()
        record["type"] = "horoscope"
        body = _call(client, "upload_health_record", {"record": record})
        assert body["status"] == "invalid"

    def test_list_requires_patient(self, client):
        body = _call(client, "list_health_records")
        assert body["status"] == "invalid"

    def test_list_bad_type(self, client):
        body = _call(client, "list_health_records", {"patient_id": "p", "record_type": "horoscope"})
        assert body["status"] == "invalid"

    def test_get_missing_record(self, client):
        body = _call(client, "get_health_record", {"record_id": "nope"})
        assert body["status"] == "error"
        assert body["error_type"] == "ApiError"

    def test_offline_upload_then_sync(self, client, services, fake_api):
        async def _flow():
            async with client:
                services.monitor.set_online(False)
                uploaded = _payload(await client.call_tool(
                    "upload_health_record", {"record": make_record().to_dict()}
                ))
                pending = _payload(await client.call_tool("pending_uploads", {"patient_id": "all"}))
                services.monitor.set_online(True)
                synced = _payload(await client.call_tool(
                    "sync_health_records", {"patient_id": "patient-1"}
                ))
                after = _payload(await client.call_tool("pending_uploads", {"patient_id": "all"}))
                return uploaded, pending, synced, after

        uploaded, pending, synced, after = _run(_flow())
        assert uploaded["status"] == "pending"
        assert pending["count"] == 1
        assert synced["status"] == "success"
        assert synced["uploaded"] == ["rec-1"]
        assert after["count"] == 0
        assert "rec-1" in fake_api.records

    def test_sync_requires_patient(self, client):
        assert _call(client, "sync_health_records")["status"] == "invalid"

    def test_resolve_without_conflict(self, client):
        body = _call(client, "resolve_record_conflict", {"record_id": "rec-1", "keep": "local"})
        assert body["status"] == "invalid"


class TestKeyAndDataTools:
    def test_rotate_keeps_records_readable(self, client, services):
        async def _flow():
            async with client:
                await client.call_tool("upload_health_record", {"record": make_record().to_dict()})
                rotated = _payload(await client.call_tool("rotate_encryption_key", {}))
                fetched = _payload(await client.call_tool("get_health_record", {"record_id": "rec-1"}))
                return rotated, fetched

        rotated, fetched = _run(_flow())
        assert rotated["status"] == "rotated"
        assert rotated["current_version"] == 2
        assert rotated["records_reencrypted"] == 1
        assert services.cache.get_by_id("rec-1").encrypted.key_version == 2
        assert fetched["status"] == "ok"
        assert services.audit.count_events(action="key_rotation") == 1

    def test_delete_all_requires_confirmation(self, client, services):
        services.repository.save_local(make_record())
        assert _call(client, "delete_all_cached_records")["status"] == "cancelled"
        assert services.cache.count() == 1

        body = _call(client, "delete_all_cached_records", {"confirm": "DELETE_ALL"})
        assert body["status"] == "all_deleted"
        assert body["pending_discarded"] == 1
        assert services.cache.count() == 0

    def test_purge_rejects_bad_retention(self, client):
        assert _call(client, "purge_cached_records", {"older_than_days": 0})["status"] == "error"

    def test_purge_keeps_recent(self, client, services):
        services.repository.save_local(make_record())
        body = _call(client, "purge_cached_records", {"older_than_days": 7})
        assert body["records_deleted"] == 0

    def test_audit_summary(self, client, services):
        services.audit.log_key_rotation("health_records", 2)
        body = _call(client, "audit_summary")
        assert body["total_events"] == 1
        assert body["events_by_action"]["key_rotation"] == 1


def test_sync_wearables(client, services):
    body = _call(client, "sync_wearables")
    assert body["received"] == body["accepted"] == 6
    assert set(body["latest_metrics"]) == {"heart_rate", "spo2", "steps"}
    assert services.cache.count() == 6


class TestBuildServices:
    def test_file_cache_requires_master_key(self, tmp_path):
        with pytest.raises(SecurityError, match="MASTER_KEY"):
            build_services(_settings(db_path=str(tmp_path / "cache.db")))

    def test_master_key_uses_wrapped_provider(self, tmp_path):
        services = build_services(_settings(
            db_path=str(tmp_path / "cache.db"),
            master_key=MasterKeyWrapper.generate_key(),
        ))
        assert isinstance(services.encryption.provider, WrappedKeyProvider)
        services.database.close()

    def test_memory_cache_uses_software_provider(self):
        services = build_services(_settings())
        assert isinstance(services.encryption.provider, SoftwareFallbackProvider)

    def test_software_keys_must_be_allowed(self):
        with pytest.raises(SecurityError):
            build_services(_settings(allow_software_keys=False))


@pytest.mark.parametrize("host,expected", [
    ("127.0.0.1", True),
    ("localhost", True),
    ("::1", True),
    ("[::1]", True),
    ("0.0.0.0", False),
    ("example.com", False),
])
def test_is_loopback_host(host, expected):
    assert _is_loopback_host(host) is expected
