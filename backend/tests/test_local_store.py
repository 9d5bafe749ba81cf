from datetime import timedelta

import pytest

from fieldsync.core.config import settings
from fieldsync.models.base import utcnow
from fieldsync.models.offline import RecordCategory, SyncStatus
from fieldsync.services.local_store import (
    InvalidTransitionError,
    MB,
    RecordNotFoundError,
    StorageQuotaError,
)


class TestQueueBasics:
    def test_save_creates_pending_record(self, store):
        local_id = store.save("assessments", {"projectId": "p1", "condition": "fair"}, parent_id="p1")
        record = store.get(local_id)
        assert local_id.startswith("offline_assessments_")
        assert record.status == SyncStatus.PENDING.value
        assert record.retry_count == 0
        assert record.payload["condition"] == "fair"

    def test_get_missing_returns_none(self, store):
        assert store.get("offline_assessments_missing") is None

    def test_unknown_category_rejected(self, store):
        with pytest.raises(ValueError):
            store.save("invoices", {})

    def test_get_by_parent_oldest_first(self, store):
        first = store.save(RecordCategory.PHOTOS, {}, parent_id="a1", blob=b"1")
        second = store.save(RecordCategory.PHOTOS, {}, parent_id="a1", blob=b"2")
        store.save(RecordCategory.PHOTOS, {}, parent_id="a2", blob=b"3")
        store.save(RecordCategory.DEFICIENCIES, {}, parent_id="a1")

        photos = store.get_by_parent("a1", RecordCategory.PHOTOS)
        assert [p.local_id for p in photos] == [first, second]
        assert len(store.get_by_parent("a1")) == 3

    def test_query_by_index_rejects_unindexed_field(self, store):
        with pytest.raises(ValueError):
            store.query_by_index("photos", "file_name", "x.jpg")

    def test_remove_is_idempotent(self, store):
        local_id = store.save("assessments", {})
        assert store.remove(local_id) is True
        assert store.remove(local_id) is False
        assert store.get(local_id) is None

    def test_clear_only_touches_one_category(self, store):
        store.save("recordings", {}, blob=b"a")
        store.save("recordings", {}, blob=b"b")
        store.save("assessments", {})
        assert store.clear("recordings") == 2
        assert store.stats().total == 1


class TestStatusTransitions:
    def _queued(self, store):
        return store.save("assessments", {"projectId": "p1"})

    def test_pending_to_synced_requires_upload(self, store):
        local_id = self._queued(store)
        with pytest.raises(InvalidTransitionError):
            store.update_status(local_id, SyncStatus.SYNCED)

    def test_failed_requires_error_message(self, store):
        local_id = self._queued(store)
        store.update_status(local_id, SyncStatus.UPLOADING)
        with pytest.raises(ValueError):
            store.update_status(local_id, SyncStatus.FAILED)

    def test_failure_increments_retry_count(self, store):
        local_id = self._queued(store)
        store.update_status(local_id, SyncStatus.UPLOADING)
        record = store.update_status(local_id, SyncStatus.FAILED, error="Network timeout")
        assert record.error_message == "Network timeout"
        assert record.retry_count == 1

    def test_failed_cannot_jump_to_synced(self, store):
        local_id = self._queued(store)
        store.update_status(local_id, SyncStatus.UPLOADING)
        store.update_status(local_id, SyncStatus.FAILED, error="boom")
        with pytest.raises(InvalidTransitionError):
            store.update_status(local_id, SyncStatus.SYNCED)

        store.update_status(local_id, SyncStatus.PENDING)
        store.update_status(local_id, SyncStatus.UPLOADING)
        record = store.update_status(local_id, SyncStatus.SYNCED)
        assert record.status == SyncStatus.SYNCED.value
        assert record.error_message is None
        assert record.upload_progress == 100

    def test_synced_is_terminal(self, store):
        local_id = self._queued(store)
        store.update_status(local_id, SyncStatus.UPLOADING)
        store.update_status(local_id, SyncStatus.SYNCED)
        for target in (SyncStatus.PENDING, SyncStatus.UPLOADING):
            with pytest.raises(InvalidTransitionError):
                store.update_status(local_id, target)
        with pytest.raises(InvalidTransitionError):
            store.update_status(local_id, SyncStatus.FAILED, error="late")

    def test_progress_updates_while_uploading(self, store):
        local_id = self._queued(store)
        store.update_status(local_id, SyncStatus.UPLOADING, progress=10)
        record = store.update_status(local_id, SyncStatus.UPLOADING, progress=150)
        assert record.upload_progress == 100

    def test_update_missing_record(self, store):
        with pytest.raises(RecordNotFoundError):
            store.update_status("offline_assessments_nope", SyncStatus.UPLOADING)

    def test_remote_id_assigned_once(self, store):
        local_id = self._queued(store)
        store.assign_remote_id(local_id, 42)
        store.assign_remote_id(local_id, "42")
        with pytest.raises(InvalidTransitionError):
            store.assign_remote_id(local_id, 43)
        assert store.get(local_id).remote_id == "42"


class TestRecovery:
    def test_reset_failed(self, store):
        local_id = store.save("recordings", {}, blob=b"audio")
        store.update_status(local_id, SyncStatus.UPLOADING)
        store.update_status(local_id, SyncStatus.FAILED, error="503")
        assert store.reset_failed("recordings") == 1
        record = store.get(local_id)
        assert record.status == SyncStatus.PENDING.value
        assert record.retry_count == 1

    def test_recover_interrupted_uploads(self, store):
        uploading = store.save("photos", {}, blob=b"img")
        pending = store.save("photos", {}, blob=b"img2")
        store.update_status(uploading, SyncStatus.UPLOADING, progress=60)

        assert store.recover_interrupted() == 1
        record = store.get(uploading)
        assert record.status == SyncStatus.PENDING.value
        assert record.upload_progress == 0
        assert record.error_message == "Interrupted during upload"
        assert store.get(pending).error_message is None

    def test_reassign_parent(self, store):
        assessment = store.save("assessments", {})
        photo = store.save("photos", {}, parent_id=assessment, blob=b"x")
        deficiency = store.save("deficiencies", {}, parent_id=assessment)

        assert store.reassign_parent(assessment, 901) == 2
        assert store.get(photo).parent_id == "901"
        assert store.get(deficiency).parent_id == "901"


class TestQuotaAndStats:
    def test_storage_limit_enforced(self, store, monkeypatch):
        monkeypatch.setattr(settings, "MAX_STORAGE_MB", 1)
        store.save("recordings", {}, blob=b"a" * (MB // 2))
        with pytest.raises(StorageQuotaError):
            store.save("recordings", {}, blob=b"b" * (MB // 2 + 1))
        assert store.stats()["recordings"].total == 1

    def test_photo_size_limit_enforced(self, store, monkeypatch):
        monkeypatch.setattr(settings, "MAX_PHOTO_SIZE_MB", 1)
        with pytest.raises(StorageQuotaError):
            store.save("photos", {}, blob=b"x" * (MB + 1))

    def test_check_quota_warns_near_limit(self, store, monkeypatch):
        monkeypatch.setattr(settings, "MAX_STORAGE_MB", 1)
        assert store.check_quota() == (True, None)
        store.save("recordings", {}, blob=b"a" * int(MB * 0.96))
        available, reason = store.check_quota()
        assert available is False
        assert "almost full" in reason

    def test_stats_match_status_counts(self, store):
        a1 = store.save("assessments", {})
        store.save("assessments", {})
        photo = store.save("photos", {}, blob=b"12345", original_blob=b"1234567890")
        rec = store.save("recordings", {}, blob=b"abc")
        store.update_status(a1, SyncStatus.UPLOADING)
        store.update_status(rec, SyncStatus.UPLOADING)
        store.update_status(rec, SyncStatus.FAILED, error="offline")

        stats = store.stats()
        pending = sum(
            store.count(category, SyncStatus.PENDING) for category in RecordCategory
        )
        assert stats.pending == pending == 2
        assert stats.uploading == 1
        assert stats.failed == 1
        assert stats["photos"].size_bytes == 15
        assert stats.size_bytes == store.usage_bytes() == 18
        assert stats.to_dict()["assessments"]["total"] == 2
        assert store.get(photo).stored_bytes == 15

    def test_release_original_frees_space(self, store):
        photo = store.save("photos", {}, blob=b"small", original_blob=b"much larger original")
        store.release_original(photo)
        record = store.get(photo)
        assert record.original_blob is None
        assert record.size_bytes == 5

    def test_cleanup_removes_old_synced_photos(self, store):
        synced = store.save("photos", {}, blob=b"abcd")
        store.update_status(synced, SyncStatus.UPLOADING)
        store.update_status(synced, SyncStatus.SYNCED)
        pending = store.save("photos", {}, blob=b"efgh")

        assert store.cleanup_synced()["deleted_photos"] == 0

        later = utcnow() + timedelta(days=settings.SYNCED_PHOTO_TTL_DAYS + 1)
        assert store.cleanup_synced(now=later) == {"deleted_photos": 1, "freed_bytes": 4}
        assert store.get(synced) is None
        assert store.get(pending) is not None


class TestMetadataAndHistory:
    def test_meta_roundtrip(self, store):
        assert store.get_meta("last_sync", "never") == "never"
        store.set_meta("last_sync", "2024-05-01T10:00:00")
        store.set_meta("last_sync", "2024-05-02T10:00:00")
        assert store.get_meta("last_sync") == "2024-05-02T10:00:00"

    def test_remote_id_outlives_removed_record(self, store):
        local_id = store.save(RecordCategory.ASSESSMENTS, {"projectId": "p1"})
        store.remember_remote_id(local_id, 77)
        store.remove(local_id)

        assert store.resolve_remote_id(local_id) == "77"
        assert store.resolve_remote_id("offline_assessments_other") is None

    def test_history_filtered_by_context(self, store):
        for context in ("roof", "roof", "hvac"):
            local_id = store.save(
                "recordings",
                {"context": context, "duration_seconds": 12},
                blob=b"audio",
                mime_type="audio/webm",
            )
            store.add_history(store.get(local_id), f"https://files.example/{local_id}", "note")

        roof = store.list_history("roof")
        assert len(roof) == 2
        assert roof[0].duration_seconds == 12
        assert len(store.list_history()) == 3
