"""MCP tools for cached record retention and deletion.

Deleting from the device cache never deletes anything on the remote
service. Records still pending upload are kept by the purge; only the
explicit delete-all removes them. All deletions are audit-logged.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from healthsync.core.audit.logger import AuditLogger
    from healthsync.core.storage.cache import RecordCache

logger = logging.getLogger(__name__)


def register_data_management_tools(
    mcp: FastMCP,
    cache: RecordCache,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register cache retention tools on the MCP server."""

    @mcp.tool
    async def purge_cached_records(
        ctx: Context,
        older_than_days: int = 7,
    ) -> str:
        """Remove synced records from this device's cache after a retention period.

        Pending (not yet uploaded) records are never purged.

        Args:
            older_than_days: Purge records last modified before this many days ago (default: 7).
        """
        if older_than_days < 1:
            return json.dumps({
                "status": "error",
                "message": "older_than_days must be at least 1.",
            })

        start_time = time.monotonic()
        cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
        count = cache.purge_before(cutoff)
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if audit_logger is not None and count > 0:
            audit_logger.log_data_delete(count=count)

        return json.dumps({
            "status": "purged",
            "records_deleted": count,
            "older_than_days": older_than_days,
            "duration_ms": round(elapsed_ms, 1),
        })

    @mcp.tool
    async def delete_all_cached_records(
        ctx: Context,
        confirm: str = "",
    ) -> str:
        """Delete every record cached on this device, including unsent ones.

        Args:
            confirm: Must be exactly 'DELETE_ALL' to proceed. Safety gate.
        """
        if confirm != "DELETE_ALL":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete all cached records, call this tool with "
                    "confirm='DELETE_ALL'. Pending uploads will be lost."
                ),
            })

        pending = len(cache.get_pending())
        count = cache.delete_all()
        if audit_logger is not None:
            audit_logger.log_data_delete(count=count)

        return json.dumps({
            "status": "all_deleted",
            "records_deleted": count,
            "pending_discarded": pending,
        })
