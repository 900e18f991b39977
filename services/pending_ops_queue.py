from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from core.settings import SYNC, SyncSettings
from datetime_utils import ensure_utc, utc_now
from models.pending_op import OpKind, OpState, PendingOp
from models.record import REFERENCE_FIELDS, RecordType
from services.errors import storage_errors
from storage.db import SessionFactory, session_scope


logger = logging.getLogger("rindang.queue")

# States that still hold a record back from being considered clean.
OPEN_STATES = (OpState.QUEUED.value, OpState.IN_FLIGHT.value, OpState.CONFLICT.value)
BLOCKING_STATES = (OpState.IN_FLIGHT.value, OpState.CONFLICT.value, OpState.DEAD.value)


def backoff_delay(attempts: int, settings: SyncSettings = SYNC) -> int:
    return min(settings.backoff_max_sec, settings.backoff_base_sec ** max(attempts, 0))


def _next_try(attempts: int, settings: SyncSettings = SYNC) -> datetime:
    return utc_now() + timedelta(seconds=backoff_delay(attempts, settings))


def _load_payload(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _dump_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


@dataclass
class PendingOperation:
    id: int
    kind: OpKind
    record_type: RecordType
    record_id: str
    payload: dict
    base_version: Optional[int]
    base_updated_at: Optional[datetime]
    state: OpState
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    next_try_at: datetime

    @property
    def key(self) -> Tuple[RecordType, str]:
        return (self.record_type, self.record_id)

    @classmethod
    def from_row(cls, row: PendingOp) -> "PendingOperation":
        return cls(
            id=row.id,
            kind=OpKind(row.kind),
            record_type=RecordType(row.record_type),
            record_id=row.record_id,
            payload=_load_payload(row.payload),
            base_version=row.base_version,
            base_updated_at=ensure_utc(row.base_updated_at),
            state=OpState(row.state),
            attempts=row.attempts,
            last_error=row.last_error,
            created_at=ensure_utc(row.created_at),
            next_try_at=ensure_utc(row.next_try_at),
        )


class PendingOpsQueue:
    """Ordered log of local mutations not yet confirmed by the server.

    Writes may join a caller's session so that a mirror update and its queue
    entry commit together. Queued entries for the same record are coalesced
    so that at most one unsent entry exists per record.
    """

    def __init__(self, session_factory: SessionFactory, settings: SyncSettings = SYNC):
        self._session_factory = session_factory
        self.settings = settings

    def _scope(self, session: Optional[Session]):
        return session_scope(self._session_factory, session)

    # ----- enqueue / coalescing -----
    def enqueue(
        self,
        kind: OpKind,
        record_type: RecordType,
        record_id: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        base_version: Optional[int] = None,
        base_updated_at: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Optional[PendingOperation]:
        """Append ``kind`` for the record, merging with an unsent entry.

        Returns the resulting queue entry, or ``None`` when the operation
        cancelled out an unsent create and nothing needs to reach the server.
        """

        kind = OpKind(kind)
        record_type = RecordType(record_type)
        payload = dict(payload or {})
        with storage_errors("enqueue"), self._scope(session) as s:
            ops = self._ops_for(s, record_type, record_id)
            tail = ops[-1] if ops and ops[-1].state == OpState.QUEUED.value else None

            if tail is not None and kind == OpKind.UPDATE and tail.kind in (
                OpKind.CREATE.value,
                OpKind.UPDATE.value,
            ):
                merged = {**_load_payload(tail.payload), **payload}
                tail.payload = _dump_payload(merged)
                s.add(tail)
                s.flush()
                logger.debug("Coalesced update into op %s (%s)", tail.id, tail.kind)
                return PendingOperation.from_row(tail)

            if tail is not None and kind == OpKind.DELETE:
                if tail.kind == OpKind.CREATE.value and tail.attempts == 0:
                    logger.debug("Delete cancels unsent create %s for %s", tail.id, record_id)
                    s.delete(tail)
                    s.flush()
                    return None
                if tail.kind != OpKind.DELETE.value:
                    # A new kind starts its own retry budget.
                    tail.attempts = 0
                    tail.last_error = None
                    tail.next_try_at = utc_now()
                tail.kind = OpKind.DELETE.value
                tail.payload = _dump_payload({})
                s.add(tail)
                s.flush()
                logger.debug("Delete replaced queued op %s for %s", tail.id, record_id)
                return PendingOperation.from_row(tail)

            now = utc_now()
            row = PendingOp(
                kind=kind.value,
                record_type=record_type.value,
                record_id=record_id,
                payload=_dump_payload(payload),
                base_version=base_version,
                base_updated_at=base_updated_at,
                state=OpState.QUEUED.value,
                created_at=now,
                next_try_at=now,
            )
            s.add(row)
            s.flush()
            return PendingOperation.from_row(row)

    def _ops_for(self, session: Session, record_type: RecordType, record_id: str) -> List[PendingOp]:
        stmt = (
            select(PendingOp)
            .where(PendingOp.record_type == RecordType(record_type).value)
            .where(PendingOp.record_id == record_id)
            .order_by(PendingOp.id.asc())
        )
        return list(session.exec(stmt))

    # ----- reads -----
    def get(self, op_id: int) -> Optional[PendingOperation]:
        with storage_errors("read op"), self._session_factory() as session:
            row = session.get(PendingOp, op_id)
            return PendingOperation.from_row(row) if row else None

    def list_ops(self, *states: OpState) -> List[PendingOperation]:
        with storage_errors("list ops"), self._session_factory() as session:
            stmt = select(PendingOp).order_by(PendingOp.id.asc())
            if states:
                stmt = stmt.where(PendingOp.state.in_([OpState(st).value for st in states]))
            return [PendingOperation.from_row(row) for row in session.exec(stmt)]

    def queued(self) -> List[PendingOperation]:
        return self.list_ops(OpState.QUEUED)

    def next_queued(self, after_id: int = 0) -> Optional[PendingOperation]:
        """Oldest queued entry with an id above ``after_id``."""

        with storage_errors("read op"), self._session_factory() as session:
            stmt = (
                select(PendingOp)
                .where(PendingOp.state == OpState.QUEUED.value)
                .where(PendingOp.id > after_id)
                .order_by(PendingOp.id.asc())
                .limit(1)
            )
            row = session.exec(stmt).first()
            return PendingOperation.from_row(row) if row else None

    def for_record(self, record_type: RecordType, record_id: str) -> List[PendingOperation]:
        with storage_errors("list ops"), self._session_factory() as session:
            return [PendingOperation.from_row(row) for row in self._ops_for(session, record_type, record_id)]

    def blocked_keys(self) -> Set[Tuple[RecordType, str]]:
        """Records whose later operations must wait on an earlier op.

        An op still in flight, conflicted or dead holds back everything
        queued after it for the same record.
        """

        with storage_errors("list ops"), self._session_factory() as session:
            stmt = select(PendingOp.record_type, PendingOp.record_id).where(
                PendingOp.state.in_(BLOCKING_STATES)
            )
            return {(RecordType(rt), rid) for rt, rid in session.exec(stmt)}

    def has_open_ops(
        self,
        record_type: RecordType,
        record_id: str,
        *,
        session: Optional[Session] = None,
    ) -> bool:
        with storage_errors("count ops"), self._scope(session) as s:
            stmt = (
                select(func.count())
                .select_from(PendingOp)
                .where(PendingOp.record_type == RecordType(record_type).value)
                .where(PendingOp.record_id == record_id)
                .where(PendingOp.state.in_(OPEN_STATES))
            )
            return int(s.exec(stmt).one()) > 0

    def count(self, *states: OpState) -> int:
        with storage_errors("count ops"), self._session_factory() as session:
            stmt = select(func.count()).select_from(PendingOp)
            if states:
                stmt = stmt.where(PendingOp.state.in_([OpState(st).value for st in states]))
            return int(session.exec(stmt).one())

    def pending_count(self) -> int:
        return self.count(*[OpState(st) for st in OPEN_STATES])

    def next_retry_at(self) -> Optional[datetime]:
        with storage_errors("read ops"), self._session_factory() as session:
            stmt = (
                select(func.min(PendingOp.next_try_at))
                .where(PendingOp.state == OpState.QUEUED.value)
                .where(PendingOp.attempts > 0)
            )
            return ensure_utc(session.exec(stmt).one())

    # ----- state transitions -----
    def _transition(self, op_id: int, session: Optional[Session], **changes: Any) -> Optional[PendingOperation]:
        with storage_errors("update op"), self._scope(session) as s:
            row = s.get(PendingOp, op_id)
            if row is None:
                return None
            for key, value in changes.items():
                setattr(row, key, value)
            s.add(row)
            s.flush()
            return PendingOperation.from_row(row)

    def mark_in_flight(self, op_id: int) -> None:
        self._transition(op_id, None, state=OpState.IN_FLIGHT.value)

    def requeue(self, op_id: int, error: str) -> Optional[PendingOperation]:
        with storage_errors("requeue op"), self._session_factory() as session:
            row = session.get(PendingOp, op_id)
            if row is None:
                return None
            row.attempts += 1
            row.last_error = error[:1000]
            row.state = OpState.QUEUED.value
            row.next_try_at = _next_try(row.attempts, self.settings)
            session.add(row)
            session.commit()
            session.refresh(row)
            return PendingOperation.from_row(row)

    def mark_conflict(self, op_id: int, error: str, *, session: Optional[Session] = None) -> None:
        self._transition(op_id, session, state=OpState.CONFLICT.value, last_error=error[:1000])

    def mark_dead(self, op_id: int, error: str, *, session: Optional[Session] = None) -> None:
        self._transition(op_id, session, state=OpState.DEAD.value, last_error=error[:1000])

    def confirm(self, op_id: int, *, session: Optional[Session] = None) -> None:
        with storage_errors("confirm op"), self._scope(session) as s:
            row = s.get(PendingOp, op_id)
            if row is not None:
                s.delete(row)
                s.flush()

    def retry(self, op_id: int, *, kind: Optional[OpKind] = None,
              payload: Optional[Dict[str, Any]] = None,
              base_updated_at: Optional[datetime] = None,
              session: Optional[Session] = None) -> Optional[PendingOperation]:
        changes: Dict[str, Any] = {
            "state": OpState.QUEUED.value,
            "attempts": 0,
            "last_error": None,
            "next_try_at": utc_now(),
        }
        if kind is not None:
            changes["kind"] = OpKind(kind).value
        if payload is not None:
            changes["payload"] = _dump_payload(payload)
        if base_updated_at is not None:
            changes["base_updated_at"] = base_updated_at
        return self._transition(op_id, session, **changes)

    def discard(self, op_id: int, *, session: Optional[Session] = None) -> None:
        self.confirm(op_id, session=session)

    def rebase(
        self,
        record_type: RecordType,
        record_id: str,
        updated_at: Optional[datetime],
        *,
        session: Optional[Session] = None,
    ) -> None:
        """Point queued ops of a record at the server version we just wrote."""

        with storage_errors("rebase ops"), self._scope(session) as s:
            for row in self._ops_for(s, record_type, record_id):
                if row.state == OpState.QUEUED.value:
                    row.base_updated_at = updated_at
                    s.add(row)
            s.flush()

    def remap_record_id(
        self,
        record_type: RecordType,
        old_id: str,
        new_id: str,
        *,
        session: Optional[Session] = None,
    ) -> int:
        """Rewrite queued references to a client id the server replaced."""

        record_type = RecordType(record_type)
        ref_fields = [name for name, target in REFERENCE_FIELDS.items() if target == record_type]
        rewritten = 0
        with storage_errors("remap ops"), self._scope(session) as s:
            for row in s.exec(select(PendingOp).order_by(PendingOp.id.asc())):
                changed = False
                if row.record_type == record_type.value and row.record_id == old_id:
                    row.record_id = new_id
                    changed = True
                payload = _load_payload(row.payload)
                for name in ref_fields:
                    if payload.get(name) == old_id:
                        payload[name] = new_id
                        changed = True
                if changed:
                    row.payload = _dump_payload(payload)
                    s.add(row)
                    rewritten += 1
            s.flush()
        if rewritten:
            logger.info("Remapped %s %s -> %s in %s queued ops", record_type.value, old_id, new_id, rewritten)
        return rewritten

    def clear(self, *, session: Optional[Session] = None) -> None:
        with storage_errors("clear queue"), self._scope(session) as s:
            for row in s.exec(select(PendingOp)).all():
                s.delete(row)


__all__ = ["PendingOpsQueue", "PendingOperation", "backoff_delay"]
