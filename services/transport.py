"""Contract between the sync engine and the remote data API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from models.record import RecordType


class Transport(Protocol):
    """Remote writes used by the drain loop.

    Implementations raise :class:`~services.errors.TransientError`,
    :class:`~services.errors.ConflictError` or
    :class:`~services.errors.PermanentError`; nothing else.
    """

    async def create(self, record_type: RecordType, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(
        self,
        record_type: RecordType,
        record_id: str,
        payload: Dict[str, Any],
        base_updated_at: Optional[datetime],
    ) -> Dict[str, Any]:
        ...

    async def delete(self, record_type: RecordType, record_id: str) -> None:
        ...


@runtime_checkable
class SupportsFetch(Protocol):
    async def fetch_all(self, record_type: RecordType) -> List[Dict[str, Any]]:
        ...


__all__ = ["SupportsFetch", "Transport"]
