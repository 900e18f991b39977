"""Transport over the managed backend's PostgREST endpoint."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from core.settings import BACKEND, SYNC, BackendSettings
from datetime_utils import coerce_datetime, to_rfc3339_utc
from models.record import RecordType
from services.errors import ConflictError, PermanentError, TransientError


logger = logging.getLogger("rindang.transport")

RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}
CONFLICT_STATUS = {409, 412}


def classify_status(status: int, message: str) -> Optional[Exception]:
    """Map an HTTP status to the sync error taxonomy (``None`` on success)."""

    if 200 <= status < 300:
        return None
    if status in RETRYABLE_STATUS or status >= 500:
        return TransientError(f"HTTP {status}: {message}")
    if status in CONFLICT_STATUS:
        return ConflictError(f"HTTP {status}: {message}")
    return PermanentError(f"HTTP {status}: {message}", status=status)


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body or "")


class RestTransport:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        access_token: Optional[str] = None,
        settings: BackendSettings = BACKEND,
        timeout_sec: float = SYNC.request_timeout_sec,
    ) -> None:
        self._s = session
        self._base = settings.url.rstrip("/") + settings.rest_path
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._h = {
            "apikey": settings.api_key,
            "Authorization": f"Bearer {access_token or settings.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    async def _request(
        self,
        method: str,
        record_type: RecordType,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
    ) -> Tuple[int, Any]:
        url = f"{self._base}/{RecordType(record_type).table}"
        try:
            async with self._s.request(
                method, url, params=params, json=json, headers=self._h, timeout=self._timeout
            ) as r:
                try:
                    body = await r.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    body = None
                return r.status, body
        except (asyncio.TimeoutError, TimeoutError, aiohttp.ClientError) as err:
            raise TransientError(str(err) or type(err).__name__) from err

    @staticmethod
    def _first_row(body: Any) -> Optional[Dict[str, Any]]:
        if isinstance(body, list):
            return body[0] if body else None
        if isinstance(body, dict):
            return body
        return None

    async def create(self, record_type: RecordType, payload: Dict[str, Any]) -> Dict[str, Any]:
        status, body = await self._request("POST", record_type, json=payload)
        error = classify_status(status, _error_message(body))
        if isinstance(error, ConflictError) and payload.get("id"):
            # Duplicate client id: the row already exists, so report it.
            current = await self.fetch_one(record_type, str(payload["id"]))
            raise ConflictError(
                str(error),
                remote=current,
                remote_updated_at=coerce_datetime((current or {}).get("updated_at")),
            )
        if error is not None:
            raise error
        return self._first_row(body) or dict(payload)

    async def update(
        self,
        record_type: RecordType,
        record_id: str,
        payload: Dict[str, Any],
        base_updated_at: Optional[datetime],
    ) -> Dict[str, Any]:
        params = {"id": f"eq.{record_id}"}
        if base_updated_at is not None:
            params["updated_at"] = f"eq.{to_rfc3339_utc(base_updated_at, precise=True)}"
        status, body = await self._request("PATCH", record_type, params=params, json=payload)
        error = classify_status(status, _error_message(body))
        if isinstance(error, ConflictError):
            current = await self.fetch_one(record_type, record_id)
            raise ConflictError(
                str(error),
                remote=current,
                remote_updated_at=coerce_datetime((current or {}).get("updated_at")),
            )
        if error is not None:
            raise error
        row = self._first_row(body)
        if row is not None:
            return row

        # Nothing matched: either the row is gone or its updated_at moved on.
        current = await self.fetch_one(record_type, record_id)
        if current is None:
            raise PermanentError(f"{record_type.value} {record_id} not found", status=404)
        logger.info("Stale update for %s %s", record_type.value, record_id)
        raise ConflictError(
            "remote record changed",
            remote=current,
            remote_updated_at=coerce_datetime(current.get("updated_at")),
        )

    async def delete(self, record_type: RecordType, record_id: str) -> None:
        status, body = await self._request("DELETE", record_type, params={"id": f"eq.{record_id}"})
        if status == 404:
            return
        error = classify_status(status, _error_message(body))
        if error is not None:
            raise error

    async def fetch_one(self, record_type: RecordType, record_id: str) -> Optional[Dict[str, Any]]:
        status, body = await self._request(
            "GET", record_type, params={"id": f"eq.{record_id}", "select": "*"}
        )
        error = classify_status(status, _error_message(body))
        if error is not None:
            raise error
        return self._first_row(body)

    async def fetch_all(self, record_type: RecordType) -> List[Dict[str, Any]]:
        status, body = await self._request("GET", record_type, params={"select": "*"})
        error = classify_status(status, _error_message(body))
        if error is not None:
            raise error
        return list(body) if isinstance(body, list) else []


__all__ = ["RETRYABLE_STATUS", "RestTransport", "classify_status"]
