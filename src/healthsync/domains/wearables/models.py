"""Wearable reading models, validation and conversion to health records."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from healthsync.core.errors import ValidationError
from healthsync.domains.records.models import (
    HealthRecord,
    RecordMetadata,
    RecordStatus,
    RecordType,
)

DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,32}$")

# LOINC codes for the metrics the mock and Health Connect sources report
DEFAULT_FHIR_MAPPINGS = {
    "heart_rate": "8867-4",
    "spo2": "59408-5",
    "steps": "55423-8",
    "respiratory_rate": "9279-1",
    "body_temperature": "8310-5",
    "blood_glucose": "2339-0",
}


class WearableType(str, Enum):
    SMARTWATCH = "smartwatch"
    FITNESS_TRACKER = "fitness_tracker"
    MEDICAL_DEVICE = "medical_device"
    HEALTH_MONITOR = "health_monitor"
    CONTINUOUS_GLUCOSE_MONITOR = "continuous_glucose_monitor"


@dataclass
class WearableMetadata:
    manufacturer: str
    model: str
    firmware_version: str
    battery_level: float = 100.0     # percent
    capabilities: dict[str, str] = field(default_factory=dict)
    last_calibration_date: str = ""
    certifications: dict[str, str] = field(default_factory=dict)
    metric_ranges: dict[str, tuple[float, float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "manufacturer": self.manufacturer,
            "model": self.model,
            "firmware_version": self.firmware_version,
            "battery_level": self.battery_level,
            "capabilities": dict(self.capabilities),
            "last_calibration_date": self.last_calibration_date,
            "certifications": dict(self.certifications),
            "metric_ranges": {k: [lo, hi] for k, (lo, hi) in self.metric_ranges.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WearableMetadata:
        return cls(
            manufacturer=data.get("manufacturer", ""),
            model=data.get("model", ""),
            firmware_version=data.get("firmware_version", ""),
            battery_level=float(data.get("battery_level", 100.0)),
            capabilities=dict(data.get("capabilities") or {}),
            last_calibration_date=data.get("last_calibration_date", ""),
            certifications=dict(data.get("certifications") or {}),
            metric_ranges={
                k: (float(v[0]), float(v[1]))
                for k, v in (data.get("metric_ranges") or {}).items()
            },
        )


@dataclass
class HealthMetric:
    """One metric reading, merged across devices."""

    name: str
    value: float
    fhir_code: str
    timestamp: datetime
    device_id: str
    user_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "fhir_code": self.fhir_code,
            "timestamp": self.timestamp.isoformat(),
            "device_id": self.device_id,
        }


@dataclass
class WearableData:
    """A batch of metric readings from one device at one instant."""

    id: str
    device_id: str
    user_id: str
    type: WearableType
    timestamp: datetime
    metrics: dict[str, float]
    metadata: WearableMetadata
    is_calibrated: bool = True
    fhir_mappings: dict[str, str] = field(default_factory=dict)

    def violations(self, now: datetime | None = None) -> list[str]:
        """Every rule the reading breaks (empty when valid)."""
        now = now or datetime.now(timezone.utc)
        problems: list[str] = []

        if not self.id.strip():
            problems.append("id must not be blank")
        if not DEVICE_ID_PATTERN.match(self.device_id or ""):
            problems.append("device_id must be 8-32 characters of [A-Za-z0-9_-]")
        if not self.user_id.strip():
            problems.append("user_id must not be blank")
        if self.timestamp.tzinfo is None:
            problems.append("timestamp must be timezone-aware")
        elif self.timestamp > now:
            problems.append("timestamp cannot be in the future")

        if not self.metrics:
            problems.append("metrics cannot be empty")
        for name, value in self.metrics.items():
            bounds = self.metadata.metric_ranges.get(name)
            if bounds is not None and not bounds[0] <= value <= bounds[1]:
                problems.append(
                    f"Metric {name} value {value} is outside {bounds[0]}..{bounds[1]}"
                )
            if name not in self.fhir_mappings:
                problems.append(f"Missing FHIR mapping for metric: {name}")

        if not 0.0 <= self.metadata.battery_level <= 100.0:
            problems.append("battery_level must be between 0 and 100")
        for label in ("manufacturer", "model", "firmware_version"):
            if not getattr(self.metadata, label).strip():
                problems.append(f"metadata.{label} must not be blank")
        return problems

    def validate(self, now: datetime | None = None) -> None:
        problems = self.violations(now)
        if problems:
            raise ValidationError(problems)

    def is_valid(self, now: datetime | None = None) -> bool:
        return not self.violations(now)

    @property
    def record_id(self) -> str:
        return f"wearable-{self.id}"

    def to_metrics(self) -> list[HealthMetric]:
        return [
            HealthMetric(
                name=name,
                value=value,
                fhir_code=self.fhir_mappings[name],
                timestamp=self.timestamp,
                device_id=self.device_id,
                user_id=self.user_id,
            )
            for name, value in sorted(self.metrics.items())
        ]

    def to_health_record(self) -> HealthRecord:
        """Convert to a ``wearable_data`` record with one observation per metric."""
        self.validate()
        stamp = self.timestamp.isoformat()
        return HealthRecord(
            id=self.record_id,
            patient_id=self.user_id,
            provider_id=self.device_id,
            type=RecordType.WEARABLE_DATA,
            date=stamp,
            content={
                "device": {
                    "identifier": self.device_id,
                    "type": self.type.value,
                    "manufacturer": self.metadata.manufacturer,
                    "model": self.metadata.model,
                    "version": self.metadata.firmware_version,
                    "capabilities": dict(self.metadata.capabilities),
                },
                "observations": [
                    {
                        "code": metric.fhir_code,
                        "name": metric.name,
                        "value": metric.value,
                        "timestamp": stamp,
                    }
                    for metric in self.to_metrics()
                ],
                "is_calibrated": self.is_calibrated,
                "last_calibration": self.metadata.last_calibration_date,
            },
            metadata=RecordMetadata(created_at=stamp, created_by=self.device_id),
            status=RecordStatus.FINAL,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "user_id": self.user_id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "metrics": dict(self.metrics),
            "metadata": self.metadata.to_dict(),
            "is_calibrated": self.is_calibrated,
            "fhir_mappings": dict(self.fhir_mappings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WearableData:
        timestamp = datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00"))
        return cls(
            id=data.get("id", ""),
            device_id=data.get("device_id", ""),
            user_id=data.get("user_id", ""),
            type=WearableType(data.get("type", WearableType.SMARTWATCH.value)),
            timestamp=timestamp,
            metrics={k: float(v) for k, v in (data.get("metrics") or {}).items()},
            metadata=WearableMetadata.from_dict(data.get("metadata") or {}),
            is_calibrated=bool(data.get("is_calibrated", True)),
            fhir_mappings=dict(data.get("fhir_mappings") or {}),
        )
