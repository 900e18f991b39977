import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep logs and the default database out of the real user data dir.
os.environ.setdefault("RINDANG_DATA_DIR", tempfile.mkdtemp(prefix="rindang-tests-"))

import pytest

from core.settings import SyncSettings
from services.mirror_store import LocalMirrorStore
from services.pending_ops_queue import PendingOpsQueue
from services.sync_engine import SyncEngine
from storage.db import create_db_engine, init_db, make_session_factory
from fakes import FakeScheduler, FakeTransport


@pytest.fixture
def settings():
    return SyncSettings(max_attempts=3, backoff_base_sec=2, backoff_max_sec=60, request_timeout_sec=0.2)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_db_engine(tmp_path / "offline.db")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def queue(session_factory, settings):
    return PendingOpsQueue(session_factory, settings)


@pytest.fixture
def store(session_factory, queue):
    return LocalMirrorStore(session_factory, queue)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def online():
    return {"value": True}


@pytest.fixture
def sync(store, queue, session_factory, transport, scheduler, settings, online):
    engine = SyncEngine(
        store,
        queue,
        session_factory,
        transport,
        scheduler=scheduler,
        is_online=lambda: online["value"],
        settings=settings,
    )
    yield engine
    engine.close()

