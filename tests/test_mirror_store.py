from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from models.pending_op import OpKind
from models.record import RecordType, SyncStatus
from services.errors import StorageError
from services.mirror_store import LocalMirrorStore

P = RecordType.PRODUCTION
L = RecordType.LAND


def production_fields(**extra):
    return {"land_id": "L1", "commodity": "Cabai", "planting_date": "2026-01-01", **extra}


def test_put_creates_dirty_record_and_queues_create(store, queue):
    rec = store.put(P, production_fields(), "p1")

    assert rec.sync_status == SyncStatus.PENDING
    assert rec.local_version == 1
    assert rec.updated_at is None
    [op] = queue.queued()
    assert op.kind == OpKind.CREATE
    assert op.payload["commodity"] == "Cabai"
    assert op.payload["planting_date"] == "2026-01-01"


def test_put_update_queues_only_changes(store, queue):
    remote_ts = datetime(2026, 1, 5, tzinfo=timezone.utc)
    store.put(P, production_fields(seed_count=5), "p1", clean=True, updated_at=remote_ts)
    assert queue.count() == 0

    rec = store.put(P, {"seed_count": 8}, "p1")

    assert rec.local_version == 2
    assert rec.dirty
    [op] = queue.queued()
    assert op.kind == OpKind.UPDATE
    assert op.payload == {"seed_count": 8}
    assert op.base_updated_at == remote_ts


def test_put_without_changes_is_noop(store, queue):
    store.put(P, production_fields(), "p1", clean=True)
    rec = store.put(P, {"commodity": "Cabai"}, "p1")
    assert rec.local_version == 1
    assert queue.count() == 0


def test_put_rejects_invalid_fields(store, queue):
    with pytest.raises(ValueError):
        store.put(P, {"land_id": "L1", "commodity": "Cabai", "planting_date": "not-a-date"}, "p1")
    assert store.get(P, "p1") is None
    assert queue.count() == 0


def test_remove_unsent_record_leaves_nothing(store, queue):
    store.put(P, production_fields(), "p1")
    assert store.remove(P, "p1") is True
    assert store.get(P, "p1", include_deleted=True) is None
    assert queue.count() == 0


def test_remove_synced_record_tombstones(store, queue):
    store.put(P, production_fields(), "p1", clean=True)
    store.remove(P, "p1")

    assert store.get(P, "p1") is None
    tomb = store.get(P, "p1", include_deleted=True)
    assert tomb.deleted and tomb.sync_status == SyncStatus.PENDING
    [op] = queue.queued()
    assert op.kind == OpKind.DELETE
    with pytest.raises(ValueError):
        store.put(P, {"notes": "again"}, "p1")


def test_list_filters_and_reads_fresh(store):
    store.put(P, production_fields(), "p1", clean=True)
    store.put(P, production_fields(land_id="L2"), "p2", clean=True)

    assert [p.id for p in store.productions("L2")] == ["p2"]
    snapshot = list(store.list(P))
    store.put(P, production_fields(), "p3")
    assert len(snapshot) == 2
    assert len(list(store.list(P))) == 3
    assert [r.id for r in store.dirty()] == ["p3"]


def test_apply_remote_never_overwrites_dirty_copy(store):
    store.put(P, production_fields(notes="mine"), "p1")
    applied = store.apply_remote(P, {"id": "p1", **production_fields(notes="theirs"), "updated_at": "2026-02-01T00:00:00Z"})
    assert applied is False
    assert store.get(P, "p1").fields["notes"] == "mine"


def test_apply_remote_skips_older_copies(store):
    store.apply_remote(P, {"id": "p1", **production_fields(notes="new"), "updated_at": "2026-02-02T00:00:00Z"})
    assert store.apply_remote(P, {"id": "p1", **production_fields(notes="old"), "updated_at": "2026-02-01T00:00:00Z"}) is False
    rec = store.get(P, "p1")
    assert rec.fields["notes"] == "new"
    assert rec.sync_status == SyncStatus.SYNCED


def test_remap_id_moves_record_and_references(store):
    store.put(L, {"name": "Kebun"}, "tmp-land")
    store.put(P, production_fields(land_id="tmp-land"), "p1")

    store.remap_id(L, "tmp-land", "srv-land")

    assert store.get(L, "tmp-land") is None
    assert store.get(L, "srv-land").fields["name"] == "Kebun"
    assert store.get(P, "p1").fields["land_id"] == "srv-land"


def test_storage_failures_surface_as_storage_error(queue):
    def broken_factory():
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    broken = LocalMirrorStore(broken_factory, queue)
    with pytest.raises(StorageError):
        broken.get(P, "p1")
