"""Field-level comparison and resolution of sync conflicts.

A sync conflict arises when a queued local edit reaches the server after
someone else has changed the same record. Conflicts are always surfaced;
these helpers compute the diff shown to the user and the payload produced
by the strategy they pick.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.record import RecordType
from models.sync_conflict import SyncConflict


IGNORED_FIELDS = frozenset(
    {"id", "created_at", "updated_at", "user_id", "created_by", "updated_by"}
)


class ResolutionStrategy(str, Enum):
    LOCAL_WINS = "local_wins"
    SERVER_WINS = "server_wins"
    MERGE = "merge"
    MANUAL = "manual"


@dataclass
class ConflictField:
    field: str
    local_value: Any
    server_value: Any

    def as_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "local": self.local_value, "server": self.server_value}


@dataclass
class SyncConflictView:
    id: Optional[int]
    op_id: int
    record_type: RecordType
    record_id: str
    local_data: Dict[str, Any]
    server_data: Dict[str, Any]
    conflicting_fields: List[ConflictField] = field(default_factory=list)
    local_timestamp: Optional[datetime] = None
    server_timestamp: Optional[datetime] = None
    resolution: Optional[str] = None

    @classmethod
    def from_row(cls, row: SyncConflict) -> "SyncConflictView":
        diff = _loads(row.diff, [])
        return cls(
            id=row.id,
            op_id=row.op_id,
            record_type=RecordType(row.record_type),
            record_id=row.record_id,
            local_data=_loads(row.local_payload, {}),
            server_data=_loads(row.remote_payload, {}),
            conflicting_fields=[
                ConflictField(item.get("field"), item.get("local"), item.get("server"))
                for item in diff
                if isinstance(item, dict)
            ],
            local_timestamp=ensure_utc(row.local_edited_at),
            server_timestamp=ensure_utc(row.remote_updated_at),
            resolution=row.resolution,
        )


@dataclass
class ConflictResolution:
    strategy: ResolutionStrategy
    resolved_data: Dict[str, Any]


def _loads(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def find_conflicting_fields(local: Dict[str, Any], server: Dict[str, Any]) -> List[ConflictField]:
    """Fields of ``local`` whose value differs from ``server``."""

    conflicts: List[ConflictField] = []
    for name, local_value in local.items():
        if name in IGNORED_FIELDS or name.startswith("_"):
            continue
        server_value = server.get(name)
        if local_value != server_value:
            conflicts.append(ConflictField(name, local_value, server_value))
    return conflicts


def merge_data(conflict: SyncConflictView) -> Dict[str, Any]:
    """Combine both sides field by field.

    Numbers take the larger value, lists take the union (server order
    first), booleans keep the local choice, anything else keeps whichever
    side changed last.
    """

    merged = dict(conflict.server_data)
    local_newer = bool(
        conflict.local_timestamp
        and conflict.server_timestamp
        and conflict.local_timestamp > conflict.server_timestamp
    )
    for item in conflict.conflicting_fields:
        local_value, server_value = item.local_value, item.server_value
        if isinstance(local_value, bool) and isinstance(server_value, bool):
            merged[item.field] = local_value
        elif isinstance(local_value, (int, float)) and isinstance(server_value, (int, float)):
            merged[item.field] = max(local_value, server_value)
        elif isinstance(local_value, list) and isinstance(server_value, list):
            union = list(server_value)
            for value in local_value:
                if value not in union:
                    union.append(value)
            merged[item.field] = union
        elif local_newer:
            merged[item.field] = local_value
    return merged


def resolve(
    conflict: SyncConflictView,
    strategy: ResolutionStrategy,
    manual: Optional[Dict[str, Any]] = None,
) -> ConflictResolution:
    strategy = ResolutionStrategy(strategy)
    if strategy == ResolutionStrategy.LOCAL_WINS:
        data = {**conflict.server_data, **conflict.local_data}
    elif strategy == ResolutionStrategy.SERVER_WINS:
        data = {**conflict.local_data, **conflict.server_data}
    elif strategy == ResolutionStrategy.MERGE:
        data = merge_data(conflict)
    else:
        if manual is None:
            raise ValueError("Manual resolutions required for manual strategy")
        data = {**conflict.server_data, **manual}
    return ConflictResolution(strategy=strategy, resolved_data=data)


def format_conflict_for_display(conflict: SyncConflictView) -> str:
    lines = [
        f"Record ID: {conflict.record_id}",
        f"Table: {conflict.record_type.table}",
        f"Server updated: {to_rfc3339_utc(conflict.server_timestamp) or '-'}",
        "",
        "Conflicting Fields:",
    ]
    lines.extend(
        f"  {item.field}: Local = {json.dumps(item.local_value, default=str)}, "
        f"Server = {json.dumps(item.server_value, default=str)}"
        for item in conflict.conflicting_fields
    )
    return "\n".join(lines)


def build_conflict_row(
    op_id: int,
    record_type: RecordType,
    record_id: str,
    local_data: Dict[str, Any],
    server_data: Dict[str, Any],
    *,
    local_version: Optional[int] = None,
    local_edited_at: Optional[datetime] = None,
    base_updated_at: Optional[datetime] = None,
    remote_updated_at: Optional[datetime] = None,
) -> SyncConflict:
    diff = [item.as_dict() for item in find_conflicting_fields(local_data, server_data)]
    return SyncConflict(
        op_id=op_id,
        record_type=RecordType(record_type).value,
        record_id=record_id,
        local_payload=json.dumps(local_data, ensure_ascii=False, sort_keys=True, default=str),
        remote_payload=json.dumps(server_data, ensure_ascii=False, sort_keys=True, default=str),
        diff=json.dumps(diff, ensure_ascii=False, default=str),
        local_version=local_version,
        local_edited_at=local_edited_at,
        base_updated_at=base_updated_at,
        remote_updated_at=remote_updated_at,
        created_at=utc_now(),
    )


__all__ = [
    "ConflictField",
    "ConflictResolution",
    "ResolutionStrategy",
    "SyncConflictView",
    "build_conflict_row",
    "find_conflicting_fields",
    "format_conflict_for_display",
    "merge_data",
    "resolve",
]
