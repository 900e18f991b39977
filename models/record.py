"""Local mirror of farm records and the shapes of their variants."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from sqlmodel import Field, SQLModel

from datetime_utils import ensure_utc, utc_now


class RecordType(str, Enum):
    LAND = "land"
    PRODUCTION = "production"
    ACTIVITY = "activity"

    @property
    def table(self) -> str:
        """Remote table name for this variant."""
        return {
            RecordType.LAND: "lands",
            RecordType.PRODUCTION: "productions",
            RecordType.ACTIVITY: "activities",
        }[self]


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    FAILED = "failed"


class Land(SQLModel):
    id: Optional[str] = None
    name: str
    area_m2: float = 0
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    commodities: List[str] = Field(default_factory=list)
    custom_commodity: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    status: Literal["active", "vacant", "archived"] = "active"
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


class Production(SQLModel):
    id: Optional[str] = None
    land_id: str
    commodity: str
    planting_date: date
    seed_count: int = 0
    estimated_harvest_date: Optional[date] = None
    harvest_date: Optional[date] = None
    harvest_yield_kg: Optional[float] = None
    status: Literal["planted", "growing", "harvested"] = "planted"
    notes: Optional[str] = None
    total_cost: Optional[float] = None
    selling_price_per_kg: Optional[float] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


class Activity(SQLModel):
    id: Optional[str] = None
    land_id: Optional[str] = None
    production_id: Optional[str] = None
    activity_type: str
    description: str
    scheduled_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    status: Literal["pending", "in_progress", "completed"] = "pending"
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


RECORD_MODELS: Dict[RecordType, Type[SQLModel]] = {
    RecordType.LAND: Land,
    RecordType.PRODUCTION: Production,
    RecordType.ACTIVITY: Activity,
}

# Fields holding the id of another record; rewritten when a server assigns a new id.
REFERENCE_FIELDS: Dict[str, RecordType] = {
    "land_id": RecordType.LAND,
    "production_id": RecordType.PRODUCTION,
}

# Columns owned by the mirror row itself rather than the fields blob.
SERVER_MANAGED_FIELDS = frozenset({"id", "created_at", "updated_at"})


def validate_fields(record_type: RecordType, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``fields`` against the variant shape and return JSON-safe values."""

    model = RECORD_MODELS[RecordType(record_type)]
    payload = {k: v for k, v in fields.items() if k not in SERVER_MANAGED_FIELDS}
    validated = model.model_validate({**payload, "id": record_id})
    dumped = validated.model_dump(mode="json", exclude_unset=True)
    return {k: v for k, v in dumped.items() if k not in SERVER_MANAGED_FIELDS}


class MirrorRecord(SQLModel, table=True):
    """One locally cached Land/Production/Activity row."""

    record_type: str = Field(primary_key=True)
    record_id: str = Field(primary_key=True)
    fields_json: str = "{}"
    updated_at: Optional[datetime] = None
    local_version: int = Field(default=0)
    synced_version: int = Field(default=0)
    sync_status: str = Field(default=SyncStatus.SYNCED.value, index=True)
    deleted: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now)


@dataclass
class Record:
    record_type: RecordType
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    local_version: int = 0
    sync_status: SyncStatus = SyncStatus.SYNCED
    deleted: bool = False

    @property
    def dirty(self) -> bool:
        return self.sync_status != SyncStatus.SYNCED

    def as_model(self) -> SQLModel:
        return RECORD_MODELS[self.record_type].model_validate(
            {**self.fields, "id": self.id, "updated_at": self.updated_at}
        )

    @classmethod
    def from_row(cls, row: MirrorRecord) -> "Record":
        try:
            fields = json.loads(row.fields_json or "{}")
        except json.JSONDecodeError:
            fields = {}
        return cls(
            record_type=RecordType(row.record_type),
            id=row.record_id,
            fields=fields if isinstance(fields, dict) else {},
            updated_at=ensure_utc(row.updated_at),
            local_version=row.local_version,
            sync_status=SyncStatus(row.sync_status),
            deleted=bool(row.deleted),
        )


__all__ = [
    "Activity",
    "Land",
    "MirrorRecord",
    "Production",
    "RECORD_MODELS",
    "REFERENCE_FIELDS",
    "Record",
    "RecordType",
    "SERVER_MANAGED_FIELDS",
    "SyncStatus",
    "validate_fields",
]
