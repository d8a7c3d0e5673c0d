"""MCP tools for wearable device data."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from healthsync.core.errors import HealthSyncError

if TYPE_CHECKING:
    from healthsync.domains.wearables.repository import WearablesRepository

logger = logging.getLogger(__name__)


def register_wearable_tools(
    mcp: FastMCP,
    wearables: WearablesRepository,
) -> None:
    """Register wearable tools on the MCP server."""

    @mcp.tool
    async def sync_wearables(ctx: Context, upload: bool = False) -> str:
        """Pull new readings from the paired wearable into the encrypted record cache.

        Invalid readings (out-of-range values, unknown device ids, future
        timestamps) are dropped and reported. Stored readings are uploaded
        by the next record sync, or immediately when ``upload`` is set.

        Args:
            upload: Upload the new readings now as one batch.
        """
        try:
            result = await wearables.sync_wearable_data(upload=upload)
        except HealthSyncError as exc:
            return json.dumps({
                "status": "error",
                "error_type": type(exc).__name__,
                "message": str(exc),
            })

        latest = {name: metric.to_dict() for name, metric in sorted(wearables.metrics.value.items())}
        return json.dumps({
            "status": "ok",
            "source": wearables.source_name,
            **result.to_dict(),
            "latest_metrics": latest,
        }, indent=2)
