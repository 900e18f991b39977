"""Online/offline tracking for the sync engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

import aiohttp

from core.settings import SYNC, SyncSettings


logger = logging.getLogger("rindang.connectivity")

Probe = Callable[[], Awaitable[bool]]


def http_probe(session: aiohttp.ClientSession, url: str, *, timeout_sec: float = 5.0) -> Probe:
    """Probe that treats any HTTP answer from ``url`` as being online."""

    timeout = aiohttp.ClientTimeout(total=timeout_sec)

    async def probe() -> bool:
        try:
            async with session.get(url, timeout=timeout) as resp:
                return resp.status < 500
        except (asyncio.TimeoutError, aiohttp.ClientError) as err:
            logger.debug("Connectivity probe failed: %s", err)
            return False

    return probe


class ConnectivityMonitor:
    """Holds the online flag and notifies subscribers on transitions.

    The flag is either pushed by the host (``set_online``) or polled from
    an async probe while :meth:`start` is active.
    """

    def __init__(
        self,
        initial: bool = False,
        *,
        probe: Optional[Probe] = None,
        settings: SyncSettings = SYNC,
    ) -> None:
        self._online = initial
        self._probe = probe
        self._interval = settings.connectivity_poll_interval_sec
        self._callbacks: List[Callable[[bool], None]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def online(self) -> bool:
        return self._online

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: Callable[[bool], None]) -> None:
        self._callbacks.append(callback)

    def unsubscribe(self, callback: Callable[[bool], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity callback failed")

    async def check(self) -> bool:
        if self._probe is None:
            return self._online
        self.set_online(await self._probe())
        return self._online

    async def run(self) -> None:
        while True:
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected connectivity probe error")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._probe is None or self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self.run())
        logger.info("Connectivity monitor started (interval=%ss)", self._interval)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


__all__ = ["ConnectivityMonitor", "http_probe"]
