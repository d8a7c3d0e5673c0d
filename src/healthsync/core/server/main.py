"""healthsync server entry point: ``python -m healthsync.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from healthsync.core.config.settings import get_settings
from healthsync.core.errors import SecurityError
from healthsync.core.server.app import build_services, create_app


def _is_loopback_host(host: str) -> bool:
    host = host.strip("[]")
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Build the record services and serve them over Streamable HTTP.

    Exits with status 1 when no usable key storage is configured.
    """
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.hs_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    if not settings.hs_allow_insecure_bind and not _is_loopback_host(settings.hs_host):
        raise RuntimeError(
            "Refusing to expose the record cache on a non-loopback host without an auth layer. "
            "Set HS_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )

    try:
        services = build_services(settings)
    except SecurityError as exc:
        logger.error("Key storage unavailable: %s", exc)
        raise SystemExit(1) from exc

    logger.info(
        "Starting healthsync on %s:%d (cache %s, conflict policy %s)",
        settings.hs_host,
        settings.hs_port,
        settings.db_path,
        settings.conflict_resolution,
    )
    mcp = create_app(services=services)
    try:
        mcp.run(
            transport="streamable-http",
            host=settings.hs_host,
            port=settings.hs_port,
        )
    finally:
        services.database.close()


if __name__ == "__main__":
    run()
