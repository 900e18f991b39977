"""Failure taxonomy shared by the store, the queue and transports."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError


class SyncError(Exception):
    """Base class for offline layer errors."""


class StorageError(SyncError):
    """Local persistence failed; nothing was written and the caller must retry."""


class TransientError(SyncError):
    """Network failure or timeout; the operation is retried with backoff."""


class ConflictError(SyncError):
    """Remote state moved past the version the local edit was based on."""

    def __init__(
        self,
        message: str = "remote record changed",
        *,
        remote: Optional[Dict[str, Any]] = None,
        remote_updated_at: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.remote = dict(remote or {})
        self.remote_updated_at = remote_updated_at


class PermanentError(SyncError):
    """Validation or authorization rejection; never retried."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as :class:`StorageError`."""

    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(f"{action} failed: {exc}") from exc


__all__ = [
    "ConflictError",
    "PermanentError",
    "StorageError",
    "SyncError",
    "TransientError",
    "storage_errors",
]
