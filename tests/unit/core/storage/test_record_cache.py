"""Tests for RecordCache: versioned rows, pagination, pending and purge."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from healthsync.core.errors import ValidationError
from healthsync.core.security.encryption import EncryptedData
from healthsync.core.storage.cache import CacheError, RecordCache
from healthsync.core.storage.models import CachedRecord, CacheState


def _sealed(tag: bytes = b"body") -> EncryptedData:
    return EncryptedData(
        ciphertext=b"ct-" + tag,
        iv=b"\x01" * 12,
        key_alias="health_records",
        key_version=1,
        timestamp=1_700_000_000_000,
    )


def _row(record_id: str = "rec-1", **overrides) -> CachedRecord:
    defaults = dict(
        id=record_id,
        patient_id="patient-1",
        record_type="lab_result",
        status="preliminary",
        record_date="2026-01-10",
        encrypted=_sealed(),
    )
    defaults.update(overrides)
    return CachedRecord(**defaults)


class TestInsert:
    def test_insert_and_get(self, cache):
        stored = cache.insert(_row())
        assert stored.last_modified
        fetched = cache.get_by_id("rec-1")
        assert fetched is not None
        assert fetched.encrypted.ciphertext == b"ct-body"
        assert fetched.version == 1
        assert fetched.pending is False

    def test_duplicate_insert_rejected(self, cache):
        cache.insert(_row())
        with pytest.raises(CacheError, match="already cached"):
            cache.insert(_row())

    def test_get_missing(self, cache):
        assert cache.get_by_id("nope") is None


class TestUpdate:
    def test_update_unknown_inserts(self, cache):
        cache.update(_row("rec-9"))
        assert cache.get_by_id("rec-9") is not None

    def test_update_mutable_overwrites(self, cache):
        cache.insert(_row())
        cache.update(_row(encrypted=_sealed(b"new"), status="amended"))
        history = cache.get_history("rec-1")
        assert len(history) == 1
        assert history[0].status == "amended"
        assert history[0].encrypted.ciphertext == b"ct-new"

    def test_update_final_creates_new_version(self, cache):
        cache.insert(_row(status="final"))
        stored = cache.update(_row(encrypted=_sealed(b"corrected"), status="amended"))
        assert stored.version == 2

        history = cache.get_history("rec-1")
        assert [h.version for h in history] == [1, 2]
        assert history[0].encrypted.ciphertext == b"ct-body"
        assert history[0].status == "final"
        assert cache.get_by_id("rec-1").status == "amended"

    def test_update_higher_version_appends(self, cache):
        cache.insert(_row())
        cache.update(_row(version=3))
        assert [h.version for h in cache.get_history("rec-1")] == [1, 3]

    def test_count_is_distinct_ids(self, cache):
        cache.insert(_row(status="final"))
        cache.update(_row(status="amended"))
        cache.insert(_row("rec-2", patient_id="patient-2"))
        assert cache.count() == 2
        assert cache.count("patient-1") == 1


class TestPagination:
    def test_newest_date_first(self, cache):
        cache.insert(_row("a", record_date="2026-01-01"))
        cache.insert(_row("b", record_date="2026-03-01"))
        cache.insert(_row("c", record_date="2026-02-01"))
        ids = [r.id for r in cache.get_by_patient("patient-1")]
        assert ids == ["b", "c", "a"]

    def test_pages(self, cache):
        for i in range(5):
            cache.insert(_row(f"rec-{i}", record_date=f"2026-01-0{i + 1}"))
        first = cache.get_by_patient("patient-1", page=0, page_size=2)
        last = cache.get_by_patient("patient-1", page=2, page_size=2)
        assert [r.id for r in first] == ["rec-4", "rec-3"]
        assert [r.id for r in last] == ["rec-0"]

    def test_filters(self, cache):
        cache.insert(_row("lab"))
        cache.insert(_row("rx", record_type="prescription", status="final"))
        assert [r.id for r in cache.get_by_patient("patient-1", record_type="prescription")] == ["rx"]
        assert [r.id for r in cache.get_by_patient("patient-1", status="preliminary")] == ["lab"]

    def test_only_current_version_listed(self, cache):
        cache.insert(_row(status="final"))
        cache.update(_row(status="amended"))
        rows = cache.get_by_patient("patient-1")
        assert len(rows) == 1
        assert rows[0].version == 2

    @pytest.mark.parametrize("page,page_size", [(-1, 20), (0, 0), (0, 101)])
    def test_invalid_paging_rejected(self, cache, page, page_size):
        with pytest.raises(ValidationError):
            cache.get_by_patient("patient-1", page=page, page_size=page_size)

    def test_custom_max_page_size(self, record_db):
        small = RecordCache(record_db, max_page_size=5)
        assert small.max_page_size == 5
        with pytest.raises(ValidationError, match="between 1 and 5"):
            small.get_by_patient("patient-1", page_size=6)


class TestPending:
    def test_pending_round_trip(self, cache):
        cache.insert(_row(pending=True))
        cache.insert(_row("rec-2"))
        assert [r.id for r in cache.get_pending()] == ["rec-1"]

        assert cache.mark_synced("rec-1") is True
        assert cache.get_pending() == []

    def test_pending_by_patient(self, cache):
        cache.insert(_row("a", pending=True))
        cache.insert(_row("b", patient_id="patient-2", pending=True))
        assert [r.id for r in cache.get_pending("patient-2")] == ["b"]

    def test_set_pending_unknown(self, cache):
        assert cache.set_pending("nope", True) is False

    def test_pending_oldest_first(self, cache):
        cache.insert(_row("new", pending=True, last_modified="2026-02-01T00:00:00+00:00"))
        cache.insert(_row("old", pending=True, last_modified="2026-01-01T00:00:00+00:00"))
        assert [r.id for r in cache.get_pending()] == ["old", "new"]


class TestDeletion:
    def test_delete_removes_all_versions(self, cache):
        cache.insert(_row(status="final"))
        cache.update(_row(status="amended"))
        assert cache.delete("rec-1") is True
        assert cache.get_history("rec-1") == []
        assert cache.delete("rec-1") is False

    def test_purge_keeps_pending_and_recent(self, cache):
        cache.insert(_row("old", last_modified="2025-01-01T00:00:00+00:00"))
        cache.insert(_row("old-pending", pending=True, last_modified="2025-01-01T00:00:00+00:00"))
        cache.insert(_row("recent", last_modified="2026-06-01T00:00:00+00:00"))

        assert cache.purge_before("2026-01-01T00:00:00+00:00") == 1
        assert cache.get_by_id("old") is None
        assert cache.get_by_id("old-pending") is not None
        assert cache.get_by_id("recent") is not None

    def test_delete_all(self, cache):
        cache.insert(_row("a"))
        cache.insert(_row("b"))
        cache.touch_cache_state("patient:patient-1")
        assert cache.delete_all() == 2
        assert cache.count() == 0
        state = cache.get_cache_state("patient:patient-1", timedelta(minutes=30))
        assert state.last_refresh is None


class TestCacheState:
    def test_never_refreshed_is_expired(self, cache):
        assert cache.get_cache_state("scope", timedelta(minutes=30)).is_expired()

    def test_touch_then_fresh(self, cache):
        now = datetime(2026, 1, 1, 12, tzinfo=timezone.utc)
        cache.touch_cache_state("scope", now)
        state = cache.get_cache_state("scope", timedelta(minutes=30))
        assert state.last_refresh == now
        assert not state.is_expired(now + timedelta(minutes=29))
        assert state.is_expired(now + timedelta(minutes=30))

    def test_invalidate(self, cache):
        cache.touch_cache_state("scope")
        cache.invalidate("scope")
        assert cache.get_cache_state("scope", timedelta(minutes=30)).last_refresh is None

    def test_cache_state_model(self):
        state = CacheState(scope="s", last_refresh=None, ttl=timedelta(minutes=1))
        assert state.is_expired()
