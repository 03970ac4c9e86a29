from __future__ import annotations

import asyncio
import inspect
from datetime import datetime
from typing import Any, Callable, Optional

from .jsonlog import json_log
from .metadata import utcnow

Listener = Callable[[bool], Any]


class Connectivity:
    """
    Host-supplied online/offline signal. Listeners (sync or async callables taking the
    new state) run only on actual transitions, in registration order.
    """

    def __init__(self, online: bool = True):
        self._online = bool(online)
        self._listeners: list[Listener] = []
        self.last_online_at: Optional[datetime] = utcnow() if online else None
        self.last_offline_at: Optional[datetime] = None if online else utcnow()

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, fn: Listener) -> Callable[[], None]:
        self._listeners.append(fn)

        def _remove():
            if fn in self._listeners:
                self._listeners.remove(fn)

        return _remove

    async def set_online(self, online: bool) -> bool:
        """Returns True if this call changed the state."""
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        if online:
            self.last_online_at = utcnow()
        else:
            self.last_offline_at = utcnow()
        json_log("info", "connectivity.changed", online=online)
        for fn in list(self._listeners):
            try:
                res = fn(online)
                if inspect.isawaitable(res):
                    await res
            except Exception as ex:
                json_log("error", "connectivity.listener_failed", online=online, error=str(ex))
        return True

    def snapshot(self) -> dict:
        return {
            "online": self._online,
            "last_online_at": self.last_online_at.isoformat() if self.last_online_at else None,
            "last_offline_at": self.last_offline_at.isoformat() if self.last_offline_at else None,
        }


class ConnectivityProbe:
    """Periodically asks the remote if it is reachable and feeds the answer into `Connectivity`."""

    def __init__(self, connectivity: Connectivity, remote, interval_seconds: float = 30, timeout_seconds: float = 5):
        self.connectivity = connectivity
        self.remote = remote
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> bool:
        try:
            ok = bool(await asyncio.wait_for(self.remote.health(), timeout=self.timeout_seconds))
        except Exception as ex:
            json_log("warn", "connectivity.probe_failed", error=str(ex))
            ok = False
        await self.connectivity.set_online(ok)
        return ok

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
