from __future__ import annotations

import asyncio
import inspect
from datetime import timedelta
from typing import Any, Callable, Optional

from .connectivity import Connectivity
from .entities import EntitySpec
from .errors import BusyError, SyncError, error_result
from .jsonlog import json_log
from .local_store import LocalStore
from .metadata import SyncMetadata, utcnow
from .pull import PullEngine
from .push import PushEngine
from .realtime import RealtimeListener
from .sync_queue import OperationQueue

Observer = Callable[[dict[str, Any]], Any]


class EntitySession:
    """Per-entity bundle of store, engines and listener, with a non-overlapping sync cycle."""

    def __init__(self, spec: EntitySpec, store: LocalStore, pull: PullEngine, push: PushEngine, realtime: RealtimeListener):
        self.spec = spec
        self.store = store
        self.pull = pull
        self.push = push
        self.realtime = realtime
        self.syncing = False
        self.last_error: Optional[str] = None

    async def run(self, mode: str) -> dict[str, Any]:
        """mode: pull | push | full (push, then pull)."""
        if self.syncing:
            return error_result(BusyError("sync already in progress"))
        self.syncing = True
        try:
            out: dict[str, Any] = {"success": True}
            if mode in ("push", "full"):
                out["push"] = await self.push.push()
            if mode in ("pull", "full"):
                out["pull"] = await self.pull.pull()
            failures = [r for r in (out.get("push"), out.get("pull")) if r and not r.get("success")]
            if failures:
                out["success"] = False
                out["error"] = "; ".join(str(r.get("error")) for r in failures)
                out["code"] = failures[0].get("code") or "error"
                self.last_error = out["error"]
            else:
                self.last_error = None
            return out
        except Exception as ex:
            self.last_error = str(ex)
            json_log("error", "sync.session.failed", entity=self.spec.name, mode=mode, error=str(ex))
            return error_result(ex)
        finally:
            self.syncing = False

    async def resolve_conflict(self, entry_id: int, keep: str) -> dict[str, Any]:
        if self.syncing:
            return error_result(BusyError("sync already in progress"))
        self.syncing = True
        try:
            data = await self.push.resolve_conflict(entry_id, keep)
        except SyncError as ex:
            return error_result(ex)
        except Exception as ex:
            json_log("error", "sync.conflict.resolve_failed", entity=self.spec.name, entry_id=entry_id, error=str(ex))
            return error_result(ex)
        finally:
            self.syncing = False
        self.last_error = None
        return {"success": True, "data": data}


class SyncOrchestrator:
    """
    Lifecycle and policy: realtime listeners and the auto-sync timer run while online,
    an online transition flushes the queue, an offline transition stops both.
    """

    def __init__(
        self,
        sessions: dict[str, EntitySession],
        connectivity: Connectivity,
        metadata: SyncMetadata,
        queue: OperationQueue,
        interval_seconds: float = 300,
        retention_days: int = 7,
        needs_sync_minutes: int = 10,
    ):
        self.sessions = sessions
        self.connectivity = connectivity
        self.metadata = metadata
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.retention_days = retention_days
        self.needs_sync_minutes = needs_sync_minutes
        self._observers: list[Observer] = []
        self._timer: Optional[asyncio.Task] = None
        # The timer task while it is inside a tick, i.e. not safe to cancel.
        self._cycle_task: Optional[asyncio.Task] = None
        self._remove_listener: Optional[Callable[[], None]] = None
        self.started = False

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        self._remove_listener = self.connectivity.add_listener(self._on_connectivity)
        if self.connectivity.online:
            await self._start_listeners()
            if not self.metadata.initial_sync_done():
                await self._initial_sync()
            self._start_timer()
        json_log("info", "sync.orchestrator.started", online=self.connectivity.online, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None
        await self._stop_timer()
        await self._stop_listeners()
        json_log("info", "sync.orchestrator.stopped")

    async def _on_connectivity(self, online: bool) -> None:
        if online:
            await self._start_listeners()
            if self.metadata.initial_sync_done():
                await self.sync_push()
            else:
                await self._initial_sync()
            self._start_timer()
        else:
            await self._stop_timer()
            await self._stop_listeners()
        await self._notify({"event": "connectivity", "online": online})

    async def _initial_sync(self) -> None:
        res = await self.sync_full()
        if res["success"]:
            self.metadata.mark_initial_sync_done()
            json_log("info", "sync.initial.done")

    async def _start_listeners(self) -> None:
        for name, s in self.sessions.items():
            try:
                await s.realtime.start()
            except Exception as ex:
                s.last_error = str(ex)
                json_log("error", "realtime.subscribe_failed", entity=name, error=str(ex))

    async def _stop_listeners(self) -> None:
        for s in self.sessions.values():
            await s.realtime.stop()

    def _start_timer(self) -> None:
        if self.interval_seconds and (self._timer is None or self._timer.done()):
            self._timer = asyncio.get_running_loop().create_task(self._auto_sync_loop())

    async def _stop_timer(self) -> None:
        """Only a sleeping timer is cancelled. A running cycle finishes, then the loop exits."""
        task, self._timer = self._timer, None
        if task is None or task is asyncio.current_task():
            return
        if task is self._cycle_task:
            await asyncio.shield(task)
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _auto_sync_loop(self) -> None:
        me = asyncio.current_task()
        while self._timer is me:
            await asyncio.sleep(self.interval_seconds)
            if self._timer is not me or not self.connectivity.online:
                continue
            self._cycle_task = me
            try:
                await self.tick()
            finally:
                self._cycle_task = None

    async def tick(self) -> dict[str, Any]:
        """One auto-sync round: full sync, then local housekeeping."""
        res = await self.sync_full()
        try:
            removed = self.queue.cleanup_processed(self.retention_days)
            cleaned = {}
            for name, s in self.sessions.items():
                if s.spec.pull_filter is not None:
                    outstanding = self.queue.outstanding_ids(name)
                    cleaned[name] = s.store.clean_cache(exclude_ids=outstanding)
            json_log("info", "sync.housekeeping", queue_removed=removed, cache_cleaned=cleaned)
        except Exception as ex:
            json_log("error", "sync.housekeeping_failed", error=str(ex))
        return res

    # -- sync triggers -----------------------------------------------------

    def _targets(self, entity: Optional[str]) -> dict[str, EntitySession]:
        if entity is None:
            return self.sessions
        if entity not in self.sessions:
            raise KeyError(f"unknown entity: {entity}")
        return {entity: self.sessions[entity]}

    async def _run(self, mode: str, entity: Optional[str]) -> dict[str, Any]:
        results = {}
        for name, s in self._targets(entity).items():
            results[name] = await s.run(mode)
        ok = all(r.get("success") for r in results.values())
        out: dict[str, Any] = {"success": ok, "data": results}
        if not ok:
            out["error"] = "; ".join(f"{n}: {r.get('error')}" for n, r in results.items() if not r.get("success"))
            out["code"] = next(r.get("code") or "error" for r in results.values() if not r.get("success"))
        await self._notify({"event": f"sync.{mode}", "success": ok})
        return out

    async def sync_pull(self, entity: Optional[str] = None) -> dict[str, Any]:
        return await self._run("pull", entity)

    async def sync_push(self, entity: Optional[str] = None) -> dict[str, Any]:
        return await self._run("push", entity)

    async def sync_full(self, entity: Optional[str] = None) -> dict[str, Any]:
        return await self._run("full", entity)

    # -- status ------------------------------------------------------------

    def needs_sync(self, entity: str, threshold_minutes: Optional[int] = None) -> bool:
        if threshold_minutes is None:
            threshold_minutes = self.needs_sync_minutes
        if self.queue.stats(entity)["pending"] > 0:
            return True
        last_push = self.metadata.last_push(entity)
        if last_push is None:
            return True
        return utcnow() - last_push > timedelta(minutes=threshold_minutes)

    def entity_status(self, name: str) -> dict[str, Any]:
        s = self.sessions[name]
        q = self.queue.stats(name)
        online = self.connectivity.online
        last_pull = self.metadata.last_pull(name)
        last_push = self.metadata.last_push(name)
        return {
            "state": "offline" if not online else ("syncing" if s.syncing else "idle"),
            "online": online,
            "syncing": s.syncing,
            "realtime": s.realtime.active,
            "pending": q["pending"],
            "failed": q["failed"],
            "last_pull": last_pull.isoformat() if last_pull else None,
            "last_push": last_push.isoformat() if last_push else None,
            "last_error": s.last_error,
        }

    def status(self) -> dict[str, Any]:
        entities = {name: self.entity_status(name) for name in self.sessions}
        return {
            **self.connectivity.snapshot(),
            "syncing": any(e["syncing"] for e in entities.values()),
            "pending": sum(e["pending"] for e in entities.values()),
            "failed": sum(e["failed"] for e in entities.values()),
            "auto_sync": self._timer is not None and not self._timer.done(),
            "entities": entities,
        }

    # -- observers ---------------------------------------------------------

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        self._observers.append(callback)

        def _unsubscribe():
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    async def _notify(self, event: dict[str, Any]) -> None:
        if not self._observers:
            return
        payload = {**event, "status": self.status()}
        for fn in list(self._observers):
            try:
                res = fn(payload)
                if inspect.isawaitable(res):
                    await res
            except Exception as ex:
                json_log("error", "sync.observer_failed", error=str(ex))
