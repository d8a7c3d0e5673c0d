"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """healthsync configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the MCP surface has no auth layer of its own.
    hs_host: str = "127.0.0.1"
    hs_port: int = 8001
    hs_log_level: str = "info"
    hs_allow_insecure_bind: bool = False

    # Remote health-records API
    api_base_url: str = "https://api.austa.health"
    api_version: int = 1
    api_timeout_seconds: float = 30.0
    api_access_token: str = ""

    # Retry / circuit breaker
    api_max_retries: int = 3
    api_retry_base_delay: float = 1.0
    api_retry_max_delay: float = 30.0
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 30.0

    # Storage (encrypted record cache)
    db_path: str = "~/.healthsync/cache.db"

    # Encryption
    # Fernet master key used to wrap per-version data keys at rest.
    master_key: str = ""
    # Software key storage is refused unless explicitly allowed.
    allow_software_keys: bool = False
    record_key_alias: str = "health_records"
    key_grace_period_days: int = 7
    max_key_age_days: int = 90

    # Cache / pagination
    default_page_size: int = 20
    max_page_size: int = 100
    cache_ttl_minutes: int = 30

    # Sync
    sync_interval_hours: float = 24.0
    conflict_resolution: Literal["server_wins", "client_wins", "manual"] = "server_wins"
    sync_on_reconnect: bool = True

    # Validation
    max_attachments: int = 10
    max_attachment_size_mb: int = 50
    supported_mime_types: list[str] = [
        "application/pdf",
        "image/jpeg",
        "image/png",
        "application/dicom",
    ]

    # Session (patient the local cache belongs to)
    patient_id: str = ""


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
