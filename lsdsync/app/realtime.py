from __future__ import annotations

from typing import Any, Optional

from .entities import EntitySpec
from .jsonlog import json_log
from .reconcile import RemoteChangeApplier


class RealtimeListener:
    """Keeps one entity's local store current from backend change events while online."""

    def __init__(self, spec: EntitySpec, remote, applier: RemoteChangeApplier):
        self.spec = spec
        self.remote = remote
        self.applier = applier
        self._handle: Optional[Any] = None
        self.events_applied = 0
        self.events_failed = 0

    @property
    def active(self) -> bool:
        return self._handle is not None

    async def start(self) -> None:
        if self._handle is not None:
            return
        self._handle = await self.remote.subscribe(
            self.spec.remote_table,
            self._on_upsert,
            self._on_upsert,
            self._on_delete,
        )
        json_log("info", "realtime.subscribed", entity=self.spec.name)

    async def stop(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await self.remote.unsubscribe(handle)
        except Exception as ex:
            json_log("warn", "realtime.unsubscribe_failed", entity=self.spec.name, error=str(ex))
        json_log("info", "realtime.unsubscribed", entity=self.spec.name)

    def _on_upsert(self, record: dict[str, Any]) -> None:
        try:
            res = self.applier.upsert([record])
        except Exception as ex:
            self.events_failed += 1
            json_log("error", "realtime.apply_failed", entity=self.spec.name, id=record.get("id"), error=str(ex))
            return
        if res["skipped"]:
            self.events_failed += 1
        else:
            self.events_applied += 1

    def _on_delete(self, record: dict[str, Any]) -> None:
        rid = record.get("id") if isinstance(record, dict) else record
        if not rid:
            return
        try:
            self.applier.delete([rid])
        except Exception as ex:
            self.events_failed += 1
            json_log("error", "realtime.apply_failed", entity=self.spec.name, id=rid, error=str(ex))
            return
        self.events_applied += 1
