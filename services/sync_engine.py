from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

from sqlmodel import select

from core.settings import SYNC, SYNC_LOG_PATH, SyncSettings
from datetime_utils import coerce_datetime, utc_now
from models.pending_op import OpKind, OpState
from models.record import SERVER_MANAGED_FIELDS, RecordType, SyncStatus
from models.sync_conflict import SyncConflict
from models.sync_meta import SyncMeta
from services.errors import ConflictError, PermanentError, StorageError, TransientError, storage_errors
from services.mirror_store import LocalMirrorStore
from services.pending_ops_queue import PendingOperation, PendingOpsQueue, backoff_delay
from services.sync_conflicts import (
    ConflictResolution,
    ResolutionStrategy,
    SyncConflictView,
    build_conflict_row,
    resolve,
)
from services.transport import SupportsFetch, Transport
from storage.db import SessionFactory


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("rindang.sync")
    if not logger.handlers:
        SYNC_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(SYNC_LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], Any]) -> Any:
        ...


class AsyncioScheduler:
    """Runs retries on the current event loop."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class Outcome(str, Enum):
    CONFIRMED = "confirmed"
    CONFLICT = "conflict"
    DEAD = "dead"
    RETRY = "retry"


@dataclass
class DrainReport:
    confirmed: List[int] = field(default_factory=list)
    conflicts: List[int] = field(default_factory=list)
    dead: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    stopped: Optional[str] = None
    already_running: bool = False

    @property
    def completed(self) -> bool:
        return self.stopped is None and not self.already_running


class SyncEngine:
    """Drains the pending operation queue against a remote transport.

    Operations go out one at a time in queue order. A transient failure
    stops the drain and schedules a retry; a conflict or a permanent
    rejection parks only the affected record while others keep draining.
    """

    def __init__(
        self,
        store: LocalMirrorStore,
        queue: PendingOpsQueue,
        session_factory: SessionFactory,
        transport: Optional[Transport] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        is_online: Callable[[], bool] = lambda: True,
        settings: SyncSettings = SYNC,
    ) -> None:
        self.store = store
        self.queue = queue
        self.transport = transport
        self.scheduler = scheduler or AsyncioScheduler()
        self.settings = settings
        self._session_factory = session_factory
        self._is_online = is_online
        self._listeners: Set[Callable[[str], Any]] = set()
        self._draining = False
        self._cancel_requested = False
        self._retry_handle: Any = None
        self._background: Set[asyncio.Task] = set()
        self.logger = _ensure_logger()

    # ------------------------------------------------------------------
    # Observers
    def subscribe(self, callback: Callable[[str], Any]) -> None:
        self._listeners.add(callback)

    def unsubscribe(self, callback: Callable[[str], Any]) -> None:
        self._listeners.discard(callback)

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception("Sync listener failed on %s", event)

    @property
    def draining(self) -> bool:
        return self._draining

    # ------------------------------------------------------------------
    # Drain
    def cancel(self) -> None:
        """Stop the running drain before its next submission."""
        if self._draining:
            self._cancel_requested = True

    async def drain(self, transport: Optional[Transport] = None) -> DrainReport:
        if self._draining:
            self.logger.debug("Drain already running")
            return DrainReport(already_running=True)
        transport = transport or self.transport
        if transport is None:
            raise ValueError("No transport configured")

        self._draining = True
        self._cancel_requested = False
        report = DrainReport()
        self._emit("drain_started")
        try:
            blocked = self.queue.blocked_keys()
            last_id = 0
            while True:
                if self._cancel_requested:
                    report.stopped = "cancelled"
                    break
                if not self._is_online():
                    report.stopped = "offline"
                    break
                op = self.queue.next_queued(last_id)
                if op is None:
                    break
                last_id = op.id
                if op.key in blocked:
                    report.skipped.append(op.id)
                    continue

                submission = asyncio.ensure_future(self._submit(op, transport))
                submission.add_done_callback(self._log_submission)
                outcome = await asyncio.shield(submission)
                if outcome == Outcome.CONFIRMED:
                    report.confirmed.append(op.id)
                elif outcome == Outcome.CONFLICT:
                    report.conflicts.append(op.id)
                    blocked.add(op.key)
                elif outcome == Outcome.DEAD:
                    report.dead.append(op.id)
                    blocked.add(op.key)
                else:
                    report.stopped = "transient"
                    break
        finally:
            self._draining = False
            self._cancel_requested = False

        if report.completed:
            self._touch_meta(last_sync_at=utc_now())
        self.logger.info(
            "Drain finished: %s confirmed, %s conflicts, %s dead, %s skipped, stopped=%s",
            len(report.confirmed),
            len(report.conflicts),
            len(report.dead),
            len(report.skipped),
            report.stopped,
        )
        self._emit("drain_finished")
        return report

    async def _call(self, op: PendingOperation, transport: Transport) -> Optional[Dict[str, Any]]:
        if op.kind == OpKind.CREATE:
            return await transport.create(op.record_type, {**op.payload, "id": op.record_id})
        if op.kind == OpKind.UPDATE:
            return await transport.update(op.record_type, op.record_id, op.payload, op.base_updated_at)
        await transport.delete(op.record_type, op.record_id)
        return None

    async def _submit(self, op: PendingOperation, transport: Transport) -> Outcome:
        # Runs shielded: once sent, the response is applied even if the drain is cancelled.
        self.queue.mark_in_flight(op.id)
        try:
            return await self._send(op, transport)
        except StorageError:
            self._release(op)
            raise

    async def _send(self, op: PendingOperation, transport: Transport) -> Outcome:
        self.logger.debug("Sending %s %s %s (op %s)", op.kind.value, op.record_type.value, op.record_id, op.id)
        try:
            result = await asyncio.wait_for(
                self._call(op, transport), timeout=self.settings.request_timeout_sec
            )
        except asyncio.TimeoutError:
            return self._on_transient(op, TransientError("request timed out"))
        except TransientError as exc:
            return self._on_transient(op, exc)
        except ConflictError as exc:
            return self._on_conflict(op, exc)
        except PermanentError as exc:
            return self._on_permanent(op, exc)
        except Exception as exc:
            # Unknown transport failures are retried like network errors.
            self.logger.exception("Op %s failed unexpectedly", op.id)
            return self._on_transient(op, exc)
        return self._on_success(op, result)

    def _release(self, op: PendingOperation) -> None:
        """Put an op whose response could not be applied back in the queue."""
        try:
            self.queue.requeue(op.id, "could not apply server response")
        except StorageError:
            self.logger.exception("Op %s left in flight until restart", op.id)

    def _log_submission(self, submission: asyncio.Future) -> None:
        # The drain may have been cancelled, leaving nobody to await this.
        if submission.cancelled():
            return
        exc = submission.exception()
        if exc is not None:
            self.logger.error("Submission failed: %s", exc, exc_info=exc)

    def _on_success(self, op: PendingOperation, remote: Optional[Dict[str, Any]]) -> Outcome:
        record_type, record_id = op.record_type, op.record_id
        with storage_errors("apply confirmation"), self._session_factory() as session:
            self.queue.confirm(op.id, session=session)
            if op.kind == OpKind.DELETE:
                if not self.queue.has_open_ops(record_type, record_id, session=session):
                    self.store.purge(record_type, record_id, session=session)
            else:
                remote = remote or {}
                server_id = str(remote.get("id") or record_id)
                if server_id != record_id:
                    self.store.remap_id(record_type, record_id, server_id, session=session)
                    self.queue.remap_record_id(record_type, record_id, server_id, session=session)
                    record_id = server_id
                still_pending = self.queue.has_open_ops(record_type, record_id, session=session)
                self.store.confirm_write(
                    record_type, record_id, remote, still_pending=still_pending, session=session
                )
                remote_updated = coerce_datetime(remote.get("updated_at"))
                if remote_updated is not None:
                    self.queue.rebase(record_type, record_id, remote_updated, session=session)
            session.commit()
        self.logger.info("Confirmed %s %s %s", op.kind.value, record_type.value, record_id)
        self._emit("op_confirmed")
        return Outcome.CONFIRMED

    def _on_transient(self, op: PendingOperation, exc: BaseException) -> Outcome:
        message = str(exc) or type(exc).__name__
        updated = self.queue.requeue(op.id, message)
        attempts = updated.attempts if updated else op.attempts + 1
        if attempts >= self.settings.max_attempts:
            self.logger.warning("Op %s exhausted %s attempts: %s", op.id, attempts, message)
            with storage_errors("mark op dead"), self._session_factory() as session:
                self.queue.mark_dead(op.id, f"retries exhausted: {message}", session=session)
                self.store.set_status(op.record_type, op.record_id, SyncStatus.FAILED, session=session)
                session.commit()
            self._emit("op_dead")
            return Outcome.DEAD
        delay = backoff_delay(attempts, self.settings)
        self.logger.warning("Op %s failed transiently (%s), retry in %ss", op.id, message, delay)
        self.schedule_retry(delay)
        return Outcome.RETRY

    def _on_conflict(self, op: PendingOperation, exc: ConflictError) -> Outcome:
        record = self.store.get(op.record_type, op.record_id, include_deleted=True)
        with storage_errors("record conflict"), self._session_factory() as session:
            self.queue.mark_conflict(op.id, str(exc), session=session)
            row = build_conflict_row(
                op.id,
                op.record_type,
                op.record_id,
                op.payload,
                exc.remote,
                local_version=record.local_version if record else None,
                local_edited_at=op.created_at,
                base_updated_at=op.base_updated_at,
                remote_updated_at=exc.remote_updated_at or coerce_datetime(exc.remote.get("updated_at")),
            )
            session.add(row)
            self.store.set_status(op.record_type, op.record_id, SyncStatus.CONFLICT, session=session)
            session.commit()
        self.logger.warning("Conflict on %s %s (op %s)", op.record_type.value, op.record_id, op.id)
        self._emit("conflict")
        return Outcome.CONFLICT

    def _on_permanent(self, op: PendingOperation, exc: PermanentError) -> Outcome:
        with storage_errors("mark op dead"), self._session_factory() as session:
            self.queue.mark_dead(op.id, str(exc), session=session)
            self.store.set_status(op.record_type, op.record_id, SyncStatus.FAILED, session=session)
            session.commit()
        self.logger.warning("Op %s rejected: %s", op.id, exc)
        self._emit("op_dead")
        return Outcome.DEAD

    # ------------------------------------------------------------------
    # Retry scheduling
    def schedule_retry(self, delay: float) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        self._retry_handle = self.scheduler.call_later(delay, self._retry_due)

    def _retry_due(self) -> None:
        self._retry_handle = None
        if self._is_online():
            self.drain_soon()

    def drain_soon(self) -> Optional[asyncio.Task]:
        """Start a drain in the background on the running loop."""
        if self._draining or self.transport is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running loop; drain deferred")
            return None
        task = loop.create_task(self.drain())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def on_connectivity_changed(self, online: bool) -> None:
        self._emit("online" if online else "offline")
        if online and self.settings.auto_drain_on_reconnect:
            self.drain_soon()

    # ------------------------------------------------------------------
    # Pull
    async def pull(
        self,
        transport: Optional[SupportsFetch] = None,
        types: Iterable[RecordType] = tuple(RecordType),
    ) -> int:
        """Refresh clean mirror copies from the server."""

        transport = transport or self.transport
        if not isinstance(transport, SupportsFetch):
            raise TypeError("Transport does not support fetching records")
        changed = 0
        for record_type in types:
            try:
                rows = await asyncio.wait_for(
                    transport.fetch_all(record_type), timeout=self.settings.request_timeout_sec
                )
            except asyncio.TimeoutError as exc:
                raise TransientError(f"fetching {record_type.table} timed out") from exc
            remote_ids = set()
            for remote in rows:
                remote_ids.add(str(remote.get("id")))
                if self.store.apply_remote(record_type, remote):
                    changed += 1
            stale = self.store.list(
                record_type, lambda rec: not rec.dirty and rec.updated_at is not None
            )
            for record in list(stale):
                if record.id not in remote_ids:
                    self.store.purge(record_type, record.id)
                    changed += 1
        self._touch_meta(last_pull_at=utc_now())
        self.logger.info("Pulled remote records, %s local changes", changed)
        self._emit("pulled")
        return changed

    # ------------------------------------------------------------------
    # Conflicts and dead letters
    def conflicts(self, *, include_resolved: bool = False) -> List[SyncConflictView]:
        with storage_errors("list conflicts"), self._session_factory() as session:
            stmt = select(SyncConflict).order_by(SyncConflict.id.asc())
            if not include_resolved:
                stmt = stmt.where(SyncConflict.resolved_at.is_(None))
            return [SyncConflictView.from_row(row) for row in session.exec(stmt)]

    def dead_letters(self) -> List[PendingOperation]:
        return self.queue.list_ops(OpState.DEAD)

    def resolve_conflict(
        self,
        conflict_id: int,
        strategy: ResolutionStrategy,
        manual: Optional[Dict[str, Any]] = None,
    ) -> ConflictResolution:
        """Apply the user's choice for a surfaced conflict.

        ``server_wins`` drops the local operation and adopts the server copy.
        Every other strategy re-queues the operation with the resolved
        payload, based on the server version it was compared against.
        """

        strategy = ResolutionStrategy(strategy)
        view = self._open_conflict(conflict_id)
        resolution = resolve(view, strategy, manual)
        record_type, record_id = view.record_type, view.record_id
        op = self.queue.get(view.op_id)
        others = [o for o in self.queue.for_record(record_type, record_id) if o.id != view.op_id]

        with storage_errors("resolve conflict"), self._session_factory() as session:
            if strategy == ResolutionStrategy.SERVER_WINS:
                if op is not None:
                    self.queue.discard(op.id, session=session)
                if view.server_data:
                    self.store.overwrite(
                        record_type,
                        record_id,
                        view.server_data,
                        status=SyncStatus.PENDING if others else SyncStatus.SYNCED,
                        updated_at=view.server_timestamp,
                        session=session,
                    )
                    if view.server_timestamp is not None:
                        self.queue.rebase(record_type, record_id, view.server_timestamp, session=session)
                else:
                    # Gone on the server: nothing left to edit.
                    for other in others:
                        self.queue.discard(other.id, session=session)
                    self.store.purge(record_type, record_id, session=session)
            else:
                fields = {
                    k: v for k, v in resolution.resolved_data.items() if k not in SERVER_MANAGED_FIELDS
                }
                if op is not None:
                    kind = op.kind
                    if kind == OpKind.CREATE and view.server_data:
                        kind = OpKind.UPDATE
                    self.queue.retry(
                        op.id,
                        kind=kind,
                        payload={} if kind == OpKind.DELETE else fields,
                        base_updated_at=view.server_timestamp,
                        session=session,
                    )
                if op is not None and op.kind == OpKind.DELETE:
                    self.store.set_status(record_type, record_id, SyncStatus.PENDING, session=session)
                else:
                    self.store.overwrite(
                        record_type,
                        record_id,
                        fields,
                        status=SyncStatus.PENDING,
                        updated_at=view.server_timestamp,
                        session=session,
                    )

            row = session.get(SyncConflict, conflict_id)
            row.resolved_at = utc_now()
            row.resolution = strategy.value
            session.add(row)
            session.commit()
        self.logger.info(
            "Resolved conflict %s on %s %s with %s", conflict_id, record_type.value, record_id, strategy.value
        )
        self._emit("conflict_resolved")
        return resolution

    def _open_conflict(self, conflict_id: int) -> SyncConflictView:
        with storage_errors("read conflict"), self._session_factory() as session:
            row = session.get(SyncConflict, conflict_id)
            if row is None or row.resolved_at is not None:
                raise KeyError(f"No open conflict {conflict_id}")
            return SyncConflictView.from_row(row)

    def retry_dead(self, op_id: int) -> None:
        with storage_errors("retry op"), self._session_factory() as session:
            op = self.queue.retry(op_id, session=session)
            if op is None:
                raise KeyError(f"No operation {op_id}")
            self.store.set_status(op.record_type, op.record_id, SyncStatus.PENDING, session=session)
            session.commit()
        self._emit("op_requeued")

    def discard_dead(self, op_id: int) -> None:
        """Give up on a rejected operation.

        A rejected create never reached the server, so its local record goes
        too. Otherwise the local copy is left for the next pull to overwrite.
        """

        op = self.queue.get(op_id)
        if op is None or op.state != OpState.DEAD:
            raise KeyError(f"No dead operation {op_id}")
        with storage_errors("discard op"), self._session_factory() as session:
            self.queue.discard(op_id, session=session)
            if op.kind == OpKind.CREATE:
                self.store.purge(op.record_type, op.record_id, session=session)
            elif not self.queue.has_open_ops(op.record_type, op.record_id, session=session):
                self.store.overwrite(
                    op.record_type,
                    op.record_id,
                    {},
                    status=SyncStatus.SYNCED,
                    updated_at=None,
                    session=session,
                )
            session.commit()
        self._emit("op_discarded")

    # ------------------------------------------------------------------
    # Status
    def _get_meta(self) -> SyncMeta:
        with storage_errors("read sync meta"), self._session_factory() as session:
            meta = session.get(SyncMeta, 1)
            if meta is None:
                meta = SyncMeta(id=1)
                session.add(meta)
                session.commit()
                session.refresh(meta)
            return meta

    def _touch_meta(self, **fields) -> None:
        with storage_errors("update sync meta"), self._session_factory() as session:
            meta = session.get(SyncMeta, 1)
            if meta is None:
                meta = SyncMeta(id=1)
            for key, value in fields.items():
                setattr(meta, key, value)
            session.add(meta)
            session.commit()

    def record_status(self, record_type: RecordType, record_id: str) -> Optional[SyncStatus]:
        record = self.store.get(record_type, record_id, include_deleted=True)
        return record.sync_status if record else None

    def status(self) -> dict:
        meta = self._get_meta()
        return {
            "online": self._is_online(),
            "draining": self._draining,
            "pendingCount": self.queue.pending_count(),
            "deadCount": self.queue.count(OpState.DEAD),
            "conflictCount": len(self.conflicts()),
            "lastSyncAt": coerce_datetime(meta.last_sync_at),
            "lastPullAt": coerce_datetime(meta.last_pull_at),
            "nextRetryAt": self.queue.next_retry_at(),
        }

    def close(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        for task in list(self._background):
            task.cancel()
        self._listeners.clear()


__all__ = ["AsyncioScheduler", "DrainReport", "Outcome", "Scheduler", "SyncEngine"]
