"""MCP tools for viewing the audit trail.

The audit log is PHI-free: patient ids are hashed and record content is
never stored, only ids, key versions and outcomes.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from healthsync.core.audit.logger import (
    ACTION_DATA_DELETE,
    ACTION_KEY_ROTATION,
    ACTION_RECORD_ACCESS,
    ACTION_RECORD_UPLOAD,
    ACTION_SECURITY_FAILURE,
    ACTION_SYNC,
)

if TYPE_CHECKING:
    from healthsync.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

_ACTIONS = (
    ACTION_RECORD_ACCESS,
    ACTION_RECORD_UPLOAD,
    ACTION_SYNC,
    ACTION_KEY_ROTATION,
    ACTION_SECURITY_FAILURE,
    ACTION_DATA_DELETE,
)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
    ) -> str:
        """View recent record access, upload, sync and key events.

        Args:
            days: Number of days to look back (default: 30).
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        counts = {action: audit_logger.count_events(action=action, since=since) for action in _ACTIONS}
        recent_events = audit_logger.get_events(since=since, limit=20)

        display_events = []
        for event in recent_events:
            display_events.append({
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "record_id": event.get("record_id"),
                "key_version": event.get("key_version"),
                "status": event.get("status"),
                "error_type": event.get("error_type"),
                "duration_ms": event.get("duration_ms"),
            })

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": audit_logger.count_events(since=since),
            "events_by_action": counts,
            "recent_events": display_events,
            "note": "This audit trail contains no health data; patient ids are hashed.",
        }, indent=2)
