"""Per-session wiring of the offline layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import delete
from sqlalchemy.engine import Engine

from core.settings import SYNC, SyncSettings
from models.sync_conflict import SyncConflict
from models.sync_meta import SyncMeta
from services.connectivity import ConnectivityMonitor, Probe
from services.errors import storage_errors
from services.mirror_store import LocalMirrorStore
from services.pending_ops_queue import PendingOpsQueue
from services.sync_engine import Scheduler, SyncEngine
from services.transport import Transport
from storage.db import SessionFactory, create_db_engine, init_db, make_session_factory


logger = logging.getLogger("rindang.context")


@dataclass
class SyncContext:
    """Everything a signed-in session needs, created once and passed around."""

    engine: Engine
    session_factory: SessionFactory
    queue: PendingOpsQueue
    store: LocalMirrorStore
    sync: SyncEngine
    connectivity: ConnectivityMonitor

    @classmethod
    def open(
        cls,
        db_path: Optional[Union[str, Path]] = None,
        transport: Optional[Transport] = None,
        *,
        online: bool = False,
        probe: Optional[Probe] = None,
        scheduler: Optional[Scheduler] = None,
        settings: SyncSettings = SYNC,
    ) -> "SyncContext":
        engine = create_db_engine(db_path)
        init_db(engine)
        session_factory = make_session_factory(engine)
        queue = PendingOpsQueue(session_factory, settings)
        store = LocalMirrorStore(session_factory, queue)
        connectivity = ConnectivityMonitor(online, probe=probe, settings=settings)
        sync = SyncEngine(
            store,
            queue,
            session_factory,
            transport,
            scheduler=scheduler,
            is_online=connectivity.is_online,
            settings=settings,
        )
        connectivity.subscribe(sync.on_connectivity_changed)
        logger.info("Opened offline store at %s", db_path or "default location")
        return cls(engine, session_factory, queue, store, sync, connectivity)

    def close(self, *, clear_local: bool = False) -> None:
        """Tear the session down; ``clear_local`` wipes the mirror and the queue (logout)."""

        self.connectivity.stop()
        self.connectivity.unsubscribe(self.sync.on_connectivity_changed)
        self.sync.close()
        if clear_local:
            with storage_errors("clear local data"), self.session_factory() as session:
                self.queue.clear(session=session)
                self.store.clear(session=session)
                session.execute(delete(SyncConflict))
                session.execute(delete(SyncMeta))
                session.commit()
            logger.info("Cleared local mirror and pending operations")
        self.engine.dispose()


__all__ = ["SyncContext"]
