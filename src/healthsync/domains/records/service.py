"""Remote health-records service (FHIR R4 endpoints)."""

from __future__ import annotations

import logging
from typing import Any

from healthsync.core.errors import ApiError
from healthsync.core.network.client import ApiClient
from healthsync.domains.records.models import HealthRecord, RecordPage

logger = logging.getLogger(__name__)

RECORDS_PATH = "/health-records/fhir/r4"
BATCH_PATH = f"{RECORDS_PATH}/batch"
MAX_RECORDS_PER_REQUEST = 100


class HealthRecordsService:
    """Typed calls against the health-records API.

    Errors from :class:`ApiClient` propagate unchanged (``NetworkError``,
    ``CircuitOpenError``, ``ApiError``). A malformed body raises ``ApiError``.
    """

    def __init__(self, api_client: ApiClient) -> None:
        self._api = api_client

    async def get_patient_records(
        self,
        patient_id: str,
        page: int = 0,
        page_size: int = 20,
        *,
        updated_after: str | None = None,
        record_type: str | None = None,
        status: str | None = None,
    ) -> RecordPage:
        params: dict[str, Any] = {
            "patient_id": patient_id,
            "page": page,
            "size": min(page_size, MAX_RECORDS_PER_REQUEST),
        }
        if updated_after:
            params["updated_after"] = updated_after
        if record_type:
            params["type"] = record_type
        if status:
            params["status"] = status

        response = await self._api.get(RECORDS_PATH, params=params)
        body = response.data
        if isinstance(body, list):
            items, meta = body, {}
        elif isinstance(body, dict):
            items, meta = body.get("data") or [], body
        else:
            raise ApiError(response.status_code, "Unexpected records payload")

        records = [_parse_record(item, response.status_code) for item in items]
        total = meta.get("total")
        total_pages = meta.get("total_pages")
        if "has_more" in meta:
            has_more = bool(meta["has_more"])
        elif total_pages is not None:
            has_more = page + 1 < int(total_pages)
        else:
            has_more = len(records) >= page_size
        return RecordPage(
            records=records,
            page=int(meta.get("page", page)),
            page_size=page_size,
            total=int(total) if total is not None else None,
            has_more=has_more,
        )

    async def get_updated_since(self, patient_id: str, updated_after: str | None) -> list[HealthRecord]:
        """Every remote record updated after ``updated_after`` (all pages)."""
        records: list[HealthRecord] = []
        page = 0
        while True:
            result = await self.get_patient_records(
                patient_id,
                page,
                MAX_RECORDS_PER_REQUEST,
                updated_after=updated_after,
            )
            records.extend(result.records)
            if not result.has_more or not result.records:
                return records
            page += 1

    async def get_record(self, record_id: str) -> HealthRecord:
        response = await self._api.get(f"{RECORDS_PATH}/{record_id}")
        return _parse_record(response.data, response.status_code)

    async def upload_record(self, record: HealthRecord) -> HealthRecord:
        """POST a record; returns the server's copy (may carry a new version)."""
        response = await self._api.post(RECORDS_PATH, json=record.to_dict())
        if not response.data:
            return record
        return _parse_record(response.data, response.status_code)

    async def upload_wearable_batch(self, records: list[HealthRecord]) -> list[HealthRecord]:
        """Upload wearable-derived records in chunks of MAX_RECORDS_PER_REQUEST."""
        accepted: list[HealthRecord] = []
        for start in range(0, len(records), MAX_RECORDS_PER_REQUEST):
            chunk = records[start:start + MAX_RECORDS_PER_REQUEST]
            response = await self._api.post(
                BATCH_PATH, json={"records": [r.to_dict() for r in chunk]}
            )
            body = response.data
            items = body.get("data") if isinstance(body, dict) else body
            if items:
                accepted.extend(_parse_record(item, response.status_code) for item in items)
            else:
                accepted.extend(chunk)
            logger.info("Uploaded wearable batch of %d records", len(chunk))
        return accepted


def _parse_record(item: Any, status_code: int) -> HealthRecord:
    if not isinstance(item, dict):
        raise ApiError(status_code, "Malformed record in response")
    try:
        return HealthRecord.from_dict(item)
    except (ValueError, TypeError) as exc:
        raise ApiError(status_code, f"Malformed record in response: {exc}") from exc
