"""healthsync MCP server: composition root and application factory.

This module provides:
- build_services() to wire every dependency explicitly (no global singletons)
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

import httpx
from fastmcp import FastMCP

from healthsync import __version__
from healthsync.core.audit.logger import AuditLogger
from healthsync.core.auth import AuthService
from healthsync.core.auth.providers import StaticTokenAuth
from healthsync.core.config.settings import Settings, get_settings
from healthsync.core.errors import SecurityError
from healthsync.core.network.circuit_breaker import CircuitBreaker
from healthsync.core.network.client import ApiClient, RetryPolicy
from healthsync.core.network.monitor import ConnectivityMonitor
from healthsync.core.security.encryption import EncryptionManager
from healthsync.core.security.key_providers import (
    HardwareKeyProvider,
    MasterKeyWrapper,
    SoftwareFallbackProvider,
    WrappedKeyProvider,
)
from healthsync.core.storage.cache import RecordCache
from healthsync.core.storage.database import RecordDatabase
from healthsync.domains.records.repository import HealthRecordsRepository
from healthsync.domains.records.service import HealthRecordsService
from healthsync.domains.records.sync import ConflictResolution, SyncManager
from healthsync.domains.records.tools.audit_tools import register_audit_tools
from healthsync.domains.records.tools.data_management_tools import (
    register_data_management_tools,
)
from healthsync.domains.records.tools.records_tools import (
    register_key_tools,
    register_record_tools,
)
from healthsync.domains.records.validation import RecordValidator
from healthsync.domains.wearables import WearableSource
from healthsync.domains.wearables.mock_source import MockWearableSource
from healthsync.domains.wearables.repository import WearablesRepository
from healthsync.domains.wearables.tools.wearable_tools import register_wearable_tools

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived object the server uses, built once by :func:`build_services`."""

    settings: Settings
    database: RecordDatabase
    encryption: EncryptionManager
    cache: RecordCache
    audit: AuditLogger
    api_client: ApiClient
    service: HealthRecordsService
    monitor: ConnectivityMonitor
    auth: AuthService
    sync_manager: SyncManager
    repository: HealthRecordsRepository
    wearables: WearablesRepository


def _key_provider(settings: Settings, database: RecordDatabase) -> HardwareKeyProvider:
    if settings.master_key:
        return WrappedKeyProvider(database, MasterKeyWrapper(settings.master_key))
    if database.path == ":memory:":
        # Keys and data both vanish with the process
        return SoftwareFallbackProvider()
    raise SecurityError(
        "MASTER_KEY is required for a persistent record cache. "
        "Generate one with MasterKeyWrapper.generate_key()."
    )


def build_services(
    settings: Settings | None = None,
    *,
    database: RecordDatabase | None = None,
    key_provider: HardwareKeyProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
    auth: AuthService | None = None,
    monitor: ConnectivityMonitor | None = None,
    wearable_source: WearableSource | None = None,
) -> Services:
    """Create and wire every dependency.

    Raises:
        SecurityError: No usable key storage (fatal, no silent fallback).
    """
    settings = settings or get_settings()

    # --- Storage ---
    if database is None:
        database = RecordDatabase(settings.db_path)
    database.initialize()
    logger.info(
        "Record cache: %s (schema v%d)", database.path, database.get_schema_version()
    )

    # --- Encryption ---
    provider = key_provider or _key_provider(settings, database)
    encryption = EncryptionManager(
        provider,
        database=database,
        allow_software_keys=settings.allow_software_keys,
        grace_period=timedelta(days=settings.key_grace_period_days),
        max_key_age=timedelta(days=settings.max_key_age_days),
    )
    if encryption.needs_rotation(settings.record_key_alias):
        logger.warning(
            "Key %s is older than %d days; rotate it",
            settings.record_key_alias,
            settings.max_key_age_days,
        )

    cache = RecordCache(database, max_page_size=settings.max_page_size)
    audit = AuditLogger(database)

    # --- Network ---
    auth = auth or StaticTokenAuth(settings.api_access_token)
    api_client = ApiClient(
        settings.api_base_url,
        api_version=settings.api_version,
        http_client=http_client,
        timeout=settings.api_timeout_seconds,
        circuit_breaker=CircuitBreaker(
            name="health_records",
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        ),
        retry_policy=RetryPolicy(
            max_attempts=settings.api_max_retries,
            base_delay=settings.api_retry_base_delay,
            max_delay=settings.api_retry_max_delay,
        ),
        auth=auth,
    )
    service = HealthRecordsService(api_client)
    monitor = monitor or ConnectivityMonitor()

    # --- Records ---
    sync_manager = SyncManager(
        database,
        cache,
        conflict_resolution=ConflictResolution(settings.conflict_resolution),
        audit=audit,
    )
    repository = HealthRecordsRepository(
        cache=cache,
        encryption=encryption,
        service=service,
        sync_manager=sync_manager,
        auth=auth,
        validator=RecordValidator(
            max_attachments=settings.max_attachments,
            max_attachment_size_mb=settings.max_attachment_size_mb,
            supported_mime_types=settings.supported_mime_types,
        ),
        audit=audit,
        monitor=monitor,
        key_alias=settings.record_key_alias,
        cache_ttl=timedelta(minutes=settings.cache_ttl_minutes),
    )
    # Rows left on a retired key by an earlier run
    repository.migrate_encryption()
    if settings.patient_id and settings.sync_on_reconnect:
        repository.enable_reconnect_sync(settings.patient_id)

    # --- Wearables ---
    if wearable_source is None:
        wearable_source = MockWearableSource(settings.patient_id or "local-user")
        logger.info("Using mock wearable source")
    wearables = WearablesRepository(wearable_source, repository, service=service)

    return Services(
        settings=settings,
        database=database,
        encryption=encryption,
        cache=cache,
        audit=audit,
        api_client=api_client,
        service=service,
        monitor=monitor,
        auth=auth,
        sync_manager=sync_manager,
        repository=repository,
        wearables=wearables,
    )


def create_app(
    *,
    settings: Settings | None = None,
    services: Services | None = None,
) -> FastMCP:
    """Create and configure the healthsync MCP server.

    1. Builds (or accepts) the service container
    2. Creates the FastMCP server with a lifespan that runs periodic sync
    3. Registers all tools
    """
    services = services or build_services(settings)
    settings = services.settings

    @asynccontextmanager
    async def lifespan(server: FastMCP):
        schedule = None
        if settings.patient_id and settings.sync_interval_hours > 0:
            patient_id = settings.patient_id
            schedule = services.sync_manager.schedule_periodic_sync(
                timedelta(hours=settings.sync_interval_hours),
                lambda: services.repository.sync(patient_id),
            )
        try:
            yield {}
        finally:
            if schedule is not None:
                schedule.cancel()

    # --- Server instance ---
    server = FastMCP(
        "healthsync",
        instructions=(
            "Encrypted health-record cache and sync server. Lists, reads and "
            "uploads FHIR health records, queues uploads while offline and "
            "syncs them when the records service is reachable."
        ),
        lifespan=lifespan,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        alias = settings.record_key_alias
        return {
            "status": "ok",
            "server": "healthsync",
            "version": __version__,
            "online": services.monitor.is_online,
            "circuit_state": services.api_client.circuit_breaker.state.value,
            "sync_state": services.sync_manager.state.value.value,
            "cached_records": services.cache.count(),
            "pending_uploads": len(services.cache.get_pending()),
            "key_alias": alias,
            "key_version": services.encryption.current_version(alias),
            "key_needs_rotation": services.encryption.needs_rotation(alias),
            "hardware_backed_keys": services.encryption.provider.hardware_backed,
        }

    register_record_tools(
        server,
        services.repository,
        default_patient_id=settings.patient_id,
        default_page_size=settings.default_page_size,
    )
    register_key_tools(server, services.repository, audit_logger=services.audit)
    register_data_management_tools(server, services.cache, services.audit)
    register_audit_tools(server, services.audit)
    register_wearable_tools(server, services.wearables)
    logger.info("Record, key, data management, audit and wearable tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
