from datetime import datetime, timezone

from models.pending_op import OpKind, OpState
from models.record import RecordType
from services.pending_ops_queue import backoff_delay

P = RecordType.PRODUCTION


def test_updates_coalesce_into_queued_create(queue):
    queue.enqueue(OpKind.CREATE, P, "p1", {"commodity": "Cabai"}, base_version=0)
    queue.enqueue(OpKind.UPDATE, P, "p1", {"seed_count": 10}, base_version=1)
    queue.enqueue(OpKind.UPDATE, P, "p1", {"seed_count": 12}, base_version=2)

    ops = queue.queued()
    assert len(ops) == 1
    assert ops[0].kind == OpKind.CREATE
    assert ops[0].payload == {"commodity": "Cabai", "seed_count": 12}


def test_identical_updates_coalesce(queue):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    queue.enqueue(OpKind.UPDATE, P, "p1", {"notes": "x"}, base_version=1, base_updated_at=base)
    queue.enqueue(OpKind.UPDATE, P, "p1", {"notes": "x"}, base_version=2, base_updated_at=base)

    ops = queue.queued()
    assert len(ops) == 1
    # The earliest base is kept for conflict detection.
    assert ops[0].base_version == 1
    assert ops[0].base_updated_at == base


def test_delete_cancels_unsent_create(queue):
    queue.enqueue(OpKind.CREATE, P, "p1", {"commodity": "Cabai"}, base_version=0)
    assert queue.enqueue(OpKind.DELETE, P, "p1") is None
    assert queue.count() == 0


def test_delete_after_attempted_create_is_kept(queue):
    op = queue.enqueue(OpKind.CREATE, P, "p1", {"commodity": "Cabai"}, base_version=0)
    queue.requeue(op.id, "timeout")
    result = queue.enqueue(OpKind.DELETE, P, "p1")
    assert result is not None
    assert result.kind == OpKind.DELETE
    assert queue.count() == 1


def test_delete_replacing_attempted_create_starts_fresh(queue):
    op = queue.enqueue(OpKind.CREATE, P, "p1", {"commodity": "Cabai"}, base_version=0)
    queue.requeue(op.id, "timeout")
    queue.requeue(op.id, "timeout")

    result = queue.enqueue(OpKind.DELETE, P, "p1")

    assert result.attempts == 0
    assert result.last_error is None
    assert queue.next_retry_at() is None


def test_update_after_in_flight_op_is_a_new_entry(queue):
    first = queue.enqueue(OpKind.UPDATE, P, "p1", {"notes": "a"}, base_version=1)
    queue.mark_in_flight(first.id)
    second = queue.enqueue(OpKind.UPDATE, P, "p1", {"notes": "b"}, base_version=2)
    assert second.id != first.id
    assert [op.id for op in queue.queued()] == [second.id]


def test_next_queued_is_fifo(queue):
    a = queue.enqueue(OpKind.CREATE, P, "a", {}, base_version=0)
    b = queue.enqueue(OpKind.CREATE, P, "b", {}, base_version=0)
    assert queue.next_queued().id == a.id
    assert queue.next_queued(a.id).id == b.id
    assert queue.next_queued(b.id) is None


def test_requeue_applies_backoff(queue, settings):
    op = queue.enqueue(OpKind.CREATE, P, "a", {}, base_version=0)
    updated = queue.requeue(op.id, "boom")
    assert updated.attempts == 1
    assert updated.state == OpState.QUEUED
    assert updated.last_error == "boom"
    assert updated.next_try_at > updated.created_at
    assert queue.next_retry_at() == updated.next_try_at


def test_backoff_is_capped(settings):
    assert backoff_delay(1, settings) == 2
    assert backoff_delay(3, settings) == 8
    assert backoff_delay(20, settings) == settings.backoff_max_sec


def test_blocked_keys_and_pending_count(queue):
    a = queue.enqueue(OpKind.UPDATE, P, "a", {"notes": "x"}, base_version=1)
    b = queue.enqueue(OpKind.UPDATE, P, "b", {"notes": "y"}, base_version=1)
    queue.mark_conflict(a.id, "changed")
    queue.mark_dead(b.id, "rejected")
    assert queue.blocked_keys() == {(P, "a"), (P, "b")}
    assert queue.pending_count() == 1
    assert queue.count(OpState.DEAD) == 1


def test_in_flight_op_blocks_its_record(queue):
    sent = queue.enqueue(OpKind.CREATE, P, "p1", {"commodity": "Cabai"}, base_version=0)
    queue.mark_in_flight(sent.id)
    queue.enqueue(OpKind.UPDATE, P, "p1", {"seed_count": 5}, base_version=1)
    queue.enqueue(OpKind.CREATE, P, "p2", {"commodity": "Tomat"}, base_version=0)

    assert queue.blocked_keys() == {(P, "p1")}


def test_remap_rewrites_ids_and_references(queue):
    queue.enqueue(OpKind.UPDATE, RecordType.LAND, "tmp-land", {"name": "Kebun"}, base_version=1)
    queue.enqueue(OpKind.CREATE, P, "p1", {"land_id": "tmp-land"}, base_version=0)

    changed = queue.remap_record_id(RecordType.LAND, "tmp-land", "srv-land")

    assert changed == 2
    land_op, prod_op = queue.queued()
    assert land_op.record_id == "srv-land"
    assert prod_op.payload["land_id"] == "srv-land"


def test_retry_resets_dead_op(queue):
    op = queue.enqueue(OpKind.UPDATE, P, "a", {"notes": "x"}, base_version=1)
    queue.requeue(op.id, "boom")
    queue.mark_dead(op.id, "retries exhausted")
    retried = queue.retry(op.id)
    assert retried.state == OpState.QUEUED
    assert retried.attempts == 0
    assert retried.last_error is None
