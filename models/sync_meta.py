"""Singleton row with sync anchors shown to the user."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncMeta(SQLModel, table=True):
    id: int = Field(default=1, primary_key=True)
    last_sync_at: Optional[datetime] = None
    last_pull_at: Optional[datetime] = None


__all__ = ["SyncMeta"]
