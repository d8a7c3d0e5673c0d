"""Mock wearable source for development and testing.

Readings represent a median healthy adult wearing a smartwatch: every value
sits inside the device's configured range.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from healthsync.domains.wearables.models import (
    DEFAULT_FHIR_MAPPINGS,
    WearableData,
    WearableMetadata,
    WearableType,
)

MOCK_DEVICE_ID = "mock-watch-0001"

MOCK_METRIC_RANGES = {
    "heart_rate": (30.0, 220.0),
    "spo2": (70.0, 100.0),
    "steps": (0.0, 100000.0),
}

# Baseline values cycled through hour by hour
_HEART_RATE = [68.0, 72.0, 65.0, 80.0, 70.0, 66.0]
_SPO2 = [97.0, 98.0, 96.5, 97.5]
_STEPS_PER_HOUR = [420.0, 0.0, 1250.0, 310.0, 880.0]


def mock_metadata() -> WearableMetadata:
    return WearableMetadata(
        manufacturer="Mock Devices",
        model="Pulse 2",
        firmware_version="2.4.1",
        battery_level=82.0,
        capabilities={"heart_rate": "ppg", "spo2": "ppg", "steps": "accelerometer"},
        last_calibration_date="2026-01-01",
        metric_ranges=dict(MOCK_METRIC_RANGES),
    )


class MockWearableSource:
    """Hourly readings for one user. Always available."""

    def __init__(
        self,
        user_id: str,
        *,
        device_id: str = MOCK_DEVICE_ID,
        hours: int = 6,
        clock=lambda: datetime.now(timezone.utc),
    ) -> None:
        self._user_id = user_id
        self._device_id = device_id
        self._hours = hours
        self._clock = clock

    @property
    def name(self) -> str:
        return "mock"

    def is_connected(self) -> bool:
        return True

    async def fetch(self, since: datetime | None = None, until: datetime | None = None) -> list[WearableData]:
        now = self._clock().replace(minute=0, second=0, microsecond=0)
        readings = []
        for offset in range(self._hours, 0, -1):
            stamp = now - timedelta(hours=offset)
            if since is not None and stamp < since:
                continue
            if until is not None and stamp >= until:
                continue
            readings.append(self._reading(stamp))
        return readings

    def _reading(self, stamp: datetime) -> WearableData:
        hour = stamp.hour
        return WearableData(
            id=f"{self._device_id}-{stamp.strftime('%Y%m%d%H')}",
            device_id=self._device_id,
            user_id=self._user_id,
            type=WearableType.SMARTWATCH,
            timestamp=stamp,
            metrics={
                "heart_rate": _HEART_RATE[hour % len(_HEART_RATE)],
                "spo2": _SPO2[hour % len(_SPO2)],
                "steps": _STEPS_PER_HOUR[hour % len(_STEPS_PER_HOUR)],
            },
            metadata=mock_metadata(),
            is_calibrated=True,
            fhir_mappings={k: DEFAULT_FHIR_MAPPINGS[k] for k in MOCK_METRIC_RANGES},
        )
