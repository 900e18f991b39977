"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(os.environ if env is None else env)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    override = environ.get("RINDANG_DATA_DIR")
    if override:
        return Path(override).expanduser()

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "Rindang"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "offline.db"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    max_attempts: int = 5
    backoff_base_sec: int = 2
    backoff_max_sec: int = 300
    request_timeout_sec: float = 20.0
    connectivity_poll_interval_sec: int = 30
    auto_drain_on_reconnect: bool = True


SYNC = SyncSettings()


@dataclass(frozen=True)
class PlanningSettings:
    # Inclusive window: planting day plus 89 following days.
    default_season_days: int = 90
    terminal_statuses: tuple[str, ...] = ("harvested",)


PLANNING = PlanningSettings()


@dataclass(frozen=True)
class BackendSettings:
    url: str = field(default_factory=lambda: os.environ.get("RINDANG_BACKEND_URL", ""))
    api_key: str = field(default_factory=lambda: os.environ.get("RINDANG_BACKEND_KEY", ""))
    rest_path: str = "/rest/v1"


BACKEND = BackendSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "DB_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "PLANNING",
    "BACKEND",
    "BackendSettings",
    "PlanningSettings",
    "SyncSettings",
    "get_default_data_dir",
]
