"""Wearable device integration: pull readings from a device source into the record cache."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from healthsync.domains.wearables.models import WearableData


@runtime_checkable
class WearableSource(Protocol):
    """Abstract interface for a wearable data feed (Health Connect, HealthKit, a vendor API).

    The repository calls these methods without knowing where readings come from.
    """

    @property
    def name(self) -> str:
        """Label for the source, e.g. 'health_connect' or 'mock'."""
        ...

    def is_connected(self) -> bool:
        """Whether the source has permission and a paired device."""
        ...

    async def fetch(self, since: datetime | None = None, until: datetime | None = None) -> list[WearableData]:
        """Readings with timestamps in ``[since, until)``."""
        ...
