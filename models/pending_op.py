"""SQLModel table for pending synchronization operations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class OpKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OpState(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    CONFLICT = "conflict"
    DEAD = "dead"


class PendingOp(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True)
    record_type: str = Field(index=True)
    record_id: str = Field(index=True)
    payload: str = "{}"
    base_version: Optional[int] = None
    base_updated_at: Optional[datetime] = None
    state: str = Field(default=OpState.QUEUED.value, index=True)
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    next_try_at: datetime = Field(default_factory=utc_now, index=True)


__all__ = ["OpKind", "OpState", "PendingOp"]
