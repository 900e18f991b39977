"""Persisted record of a queued write the server rejected as stale."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class SyncConflict(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    op_id: int = Field(index=True)
    record_type: str
    record_id: str = Field(index=True)
    local_payload: str = "{}"
    remote_payload: str = "{}"
    diff: str = "[]"
    local_version: Optional[int] = None
    local_edited_at: Optional[datetime] = None
    base_updated_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


__all__ = ["SyncConflict"]
