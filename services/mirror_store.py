"""Durable on-device copy of Land, Production and Activity records."""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlmodel import Session, select

from datetime_utils import coerce_datetime
from models.pending_op import OpKind
from models.record import (
    REFERENCE_FIELDS,
    MirrorRecord,
    Production,
    Record,
    RecordType,
    SyncStatus,
    validate_fields,
)
from services.errors import storage_errors
from services.pending_ops_queue import PendingOpsQueue
from storage.db import SessionFactory, session_scope


logger = logging.getLogger("rindang.store")


def _serialise_fields(fields: Dict[str, Any]) -> str:
    return json.dumps(fields, ensure_ascii=False, sort_keys=True)


def _deserialise_fields(payload: Optional[str]) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass
    return {}


class LocalMirrorStore:
    """Local mirror of remote collections.

    Every local mutation is committed together with its pending operation.
    Writes coming from the server (``clean=True``) and the reconciliation
    helpers used while draining never touch the queue.
    """

    def __init__(self, session_factory: SessionFactory, queue: PendingOpsQueue):
        self._session_factory = session_factory
        self.queue = queue

    # ----- reads -----
    def get(
        self,
        record_type: RecordType,
        record_id: str,
        *,
        include_deleted: bool = False,
    ) -> Optional[Record]:
        with storage_errors("read record"), self._session_factory() as session:
            row = session.get(MirrorRecord, (RecordType(record_type).value, record_id))
            if row is None or (row.deleted and not include_deleted):
                return None
            return Record.from_row(row)

    def list(
        self,
        record_type: RecordType,
        predicate: Optional[Callable[[Record], bool]] = None,
        *,
        include_deleted: bool = False,
    ) -> Iterator[Record]:
        """Yield records of one type; each call reads afresh."""

        with storage_errors("list records"), self._session_factory() as session:
            stmt = (
                select(MirrorRecord)
                .where(MirrorRecord.record_type == RecordType(record_type).value)
                .order_by(MirrorRecord.record_id.asc())
            )
            records = [Record.from_row(row) for row in session.exec(stmt)]
        for record in records:
            if record.deleted and not include_deleted:
                continue
            if predicate is None or predicate(record):
                yield record

    def productions(self, land_id: Optional[str] = None) -> List[Production]:
        items = self.list(
            RecordType.PRODUCTION,
            (lambda rec: rec.fields.get("land_id") == land_id) if land_id else None,
        )
        return [rec.as_model() for rec in items]

    def dirty(self) -> List[Record]:
        result: List[Record] = []
        for record_type in RecordType:
            result.extend(self.list(record_type, lambda rec: rec.dirty, include_deleted=True))
        return result

    # ----- local writes -----
    def put(
        self,
        record_type: RecordType,
        fields: Dict[str, Any],
        record_id: Optional[str] = None,
        *,
        clean: bool = False,
        updated_at: Optional[datetime] = None,
    ) -> Record:
        """Insert or update a record.

        A local write bumps ``local_version``, marks the record pending and
        queues a create (full snapshot) or an update (changed fields only).
        ``clean=True`` stores a server copy as synced and queues nothing.
        """

        record_type = RecordType(record_type)
        rid = record_id or fields.get("id") or str(uuid.uuid4())
        with storage_errors("save record"), self._session_factory() as session:
            row = session.get(MirrorRecord, (record_type.value, rid))
            if row is not None and row.deleted and not clean:
                raise ValueError(f"{record_type.value} {rid} was deleted")

            if row is None or row.deleted:
                values = validate_fields(record_type, rid, fields)
                row = row or MirrorRecord(record_type=record_type.value, record_id=rid)
                row.deleted = False
                row.fields_json = _serialise_fields(values)
                row.local_version += 1
                if clean:
                    self._mark_clean(row, updated_at)
                else:
                    self._mark_pending(row)
                    self.queue.enqueue(
                        OpKind.CREATE,
                        record_type,
                        rid,
                        values,
                        base_version=0,
                        session=session,
                    )
            else:
                current = _deserialise_fields(row.fields_json)
                values = validate_fields(record_type, rid, {**current, **fields})
                changes = {k: v for k, v in values.items() if current.get(k) != v}
                if not changes and not clean:
                    return Record.from_row(row)
                base_version = row.local_version
                base_updated_at = row.updated_at
                row.fields_json = _serialise_fields(values)
                row.local_version += 1
                if clean:
                    self._mark_clean(row, updated_at)
                else:
                    self._mark_pending(row)
                    self.queue.enqueue(
                        OpKind.UPDATE,
                        record_type,
                        rid,
                        changes,
                        base_version=base_version,
                        base_updated_at=base_updated_at,
                        session=session,
                    )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug("Saved %s %s v%s (%s)", record_type.value, rid, row.local_version, row.sync_status)
            return Record.from_row(row)

    def remove(self, record_type: RecordType, record_id: str) -> bool:
        """Tombstone a record and queue its deletion.

        The row is purged right away only when its create never left the
        device; otherwise it stays as a tombstone until the delete is confirmed.
        """

        record_type = RecordType(record_type)
        with storage_errors("delete record"), self._session_factory() as session:
            row = session.get(MirrorRecord, (record_type.value, record_id))
            if row is None or row.deleted:
                return False
            entry = self.queue.enqueue(
                OpKind.DELETE,
                record_type,
                record_id,
                base_version=row.local_version,
                base_updated_at=row.updated_at,
                session=session,
            )
            if entry is None and not self.queue.has_open_ops(record_type, record_id, session=session):
                session.delete(row)
            else:
                row.deleted = True
                row.local_version += 1
                self._mark_pending(row)
                session.add(row)
            session.commit()
            return True

    def apply_remote(self, record_type: RecordType, remote: Dict[str, Any]) -> bool:
        """Cache a server row unless the local copy has unsynced changes."""

        record_type = RecordType(record_type)
        rid = str(remote.get("id") or "")
        if not rid:
            return False
        existing = self.get(record_type, rid, include_deleted=True)
        if existing is not None and existing.dirty:
            logger.debug("Keeping local %s %s over remote copy", record_type.value, rid)
            return False
        remote_updated = coerce_datetime(remote.get("updated_at"))
        if existing is not None and existing.updated_at and remote_updated and remote_updated <= existing.updated_at:
            return False
        self.put(record_type, remote, rid, clean=True, updated_at=remote_updated)
        return True

    # ----- reconciliation helpers (never queue) -----
    @staticmethod
    def _mark_pending(row: MirrorRecord) -> None:
        # A conflict or dead op still holds the record back; keep showing that.
        if row.sync_status not in (SyncStatus.CONFLICT.value, SyncStatus.FAILED.value):
            row.sync_status = SyncStatus.PENDING.value

    def _mark_clean(self, row: MirrorRecord, updated_at: Optional[datetime]) -> None:
        row.sync_status = SyncStatus.SYNCED.value
        row.synced_version = row.local_version
        if updated_at is not None:
            row.updated_at = updated_at

    def confirm_write(
        self,
        record_type: RecordType,
        record_id: str,
        remote: Optional[Dict[str, Any]],
        *,
        still_pending: bool,
        session: Optional[Session] = None,
    ) -> None:
        """Record the server's answer to a create or update."""

        record_type = RecordType(record_type)
        with storage_errors("confirm record"), session_scope(self._session_factory, session) as s:
            row = s.get(MirrorRecord, (record_type.value, record_id))
            if row is None:
                return
            remote = remote or {}
            remote_updated = coerce_datetime(remote.get("updated_at"))
            if still_pending:
                if remote_updated is not None:
                    row.updated_at = remote_updated
            else:
                if remote:
                    current = _deserialise_fields(row.fields_json)
                    values = validate_fields(record_type, record_id, {**current, **remote})
                    row.fields_json = _serialise_fields(values)
                self._mark_clean(row, remote_updated)
            s.add(row)
            s.flush()

    def set_status(
        self,
        record_type: RecordType,
        record_id: str,
        status: SyncStatus,
        *,
        session: Optional[Session] = None,
    ) -> None:
        with storage_errors("update record"), session_scope(self._session_factory, session) as s:
            row = s.get(MirrorRecord, (RecordType(record_type).value, record_id))
            if row is None:
                return
            row.sync_status = SyncStatus(status).value
            if row.sync_status == SyncStatus.SYNCED.value:
                row.synced_version = row.local_version
            s.add(row)
            s.flush()

    def overwrite(
        self,
        record_type: RecordType,
        record_id: str,
        fields: Dict[str, Any],
        *,
        status: SyncStatus,
        updated_at: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> None:
        """Replace local fields with resolved data without queueing anything."""

        record_type = RecordType(record_type)
        with storage_errors("overwrite record"), session_scope(self._session_factory, session) as s:
            row = s.get(MirrorRecord, (record_type.value, record_id))
            if row is None:
                return
            current = _deserialise_fields(row.fields_json)
            values = validate_fields(record_type, record_id, {**current, **fields})
            row.fields_json = _serialise_fields(values)
            row.updated_at = updated_at
            row.sync_status = SyncStatus(status).value
            if row.sync_status == SyncStatus.SYNCED.value:
                row.synced_version = row.local_version
                row.deleted = False
            s.add(row)
            s.flush()

    def purge(self, record_type: RecordType, record_id: str, *, session: Optional[Session] = None) -> None:
        with storage_errors("purge record"), session_scope(self._session_factory, session) as s:
            row = s.get(MirrorRecord, (RecordType(record_type).value, record_id))
            if row is not None:
                s.delete(row)
                s.flush()

    def remap_id(
        self,
        record_type: RecordType,
        old_id: str,
        new_id: str,
        *,
        session: Optional[Session] = None,
    ) -> None:
        """Move a record to its server id and rewrite references to it."""

        record_type = RecordType(record_type)
        ref_fields = [name for name, target in REFERENCE_FIELDS.items() if target == record_type]
        with storage_errors("remap record"), session_scope(self._session_factory, session) as s:
            row = s.get(MirrorRecord, (record_type.value, old_id))
            if row is not None:
                moved = MirrorRecord(
                    record_type=row.record_type,
                    record_id=new_id,
                    fields_json=row.fields_json,
                    updated_at=row.updated_at,
                    local_version=row.local_version,
                    synced_version=row.synced_version,
                    sync_status=row.sync_status,
                    deleted=row.deleted,
                    created_at=row.created_at,
                )
                s.delete(row)
                s.flush()
                s.add(moved)
            if ref_fields:
                for other in s.exec(select(MirrorRecord)).all():
                    fields = _deserialise_fields(other.fields_json)
                    touched = False
                    for name in ref_fields:
                        if fields.get(name) == old_id:
                            fields[name] = new_id
                            touched = True
                    if touched:
                        other.fields_json = _serialise_fields(fields)
                        s.add(other)
            s.flush()

    def clear(self, *, session: Optional[Session] = None) -> None:
        with storage_errors("clear mirror"), session_scope(self._session_factory, session) as s:
            for row in s.exec(select(MirrorRecord)).all():
                s.delete(row)


__all__ = ["LocalMirrorStore"]
