import asyncio

import pytest

from models.record import RecordType
from services.context import SyncContext
from fakes import FakeScheduler, FakeTransport


@pytest.mark.asyncio
async def test_context_wires_store_queue_and_engine(tmp_path):
    transport = FakeTransport()
    ctx = SyncContext.open(tmp_path / "offline.db", transport, scheduler=FakeScheduler())
    try:
        ctx.store.put(RecordType.LAND, {"name": "Kebun Barat"}, "L1")
        assert ctx.sync.status()["online"] is False

        report = await ctx.sync.drain()
        assert report.stopped == "offline"

        ctx.connectivity.set_online(True)
        for _ in range(100):
            if ctx.queue.count() == 0 and not ctx.sync.draining:
                break
            await asyncio.sleep(0.01)
        assert [call[0] for call in transport.calls] == ["create"]
        assert ctx.sync.status()["lastSyncAt"] is not None
    finally:
        ctx.close()


def test_state_survives_reopen(tmp_path):
    path = tmp_path / "offline.db"
    ctx = SyncContext.open(path, FakeTransport(), scheduler=FakeScheduler())
    ctx.store.put(RecordType.LAND, {"name": "Kebun Barat"}, "L1")
    ctx.close()

    reopened = SyncContext.open(path, FakeTransport(), scheduler=FakeScheduler())
    try:
        assert reopened.store.get(RecordType.LAND, "L1").fields["name"] == "Kebun Barat"
        assert reopened.queue.pending_count() == 1
    finally:
        reopened.close()


def test_close_with_clear_local_wipes_everything(tmp_path):
    path = tmp_path / "offline.db"
    ctx = SyncContext.open(path, FakeTransport(), scheduler=FakeScheduler())
    ctx.store.put(RecordType.LAND, {"name": "Kebun Barat"}, "L1")
    ctx.close(clear_local=True)

    reopened = SyncContext.open(path, FakeTransport(), scheduler=FakeScheduler())
    try:
        assert reopened.store.get(RecordType.LAND, "L1") is None
        assert reopened.queue.count() == 0
    finally:
        reopened.close()
