from __future__ import annotations

import time
from typing import Any, Optional

from .connectivity import Connectivity
from .entities import EntitySpec
from .errors import BusyError, ConflictError, NotFoundError, OfflineError, RemoteError, ValidationError, error_result
from .jsonlog import json_log
from .local_store import LocalStore
from .metadata import SyncMetadata
from .sync_queue import OperationQueue


class PushEngine:
    """
    Drains one entity's share of the operation queue against the backend, oldest first.

    A failed entry is marked failed and the drain moves on, except that later entries for
    the same entity id are held back for this cycle so they never overtake the failure.
    Only one drain runs at a time; a call while one is in flight returns immediately.
    """

    def __init__(
        self,
        spec: EntitySpec,
        store: LocalStore,
        queue: OperationQueue,
        remote,
        connectivity: Connectivity,
        metadata: SyncMetadata,
    ):
        self.spec = spec
        self.store = store
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.metadata = metadata
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def push(self) -> dict[str, Any]:
        if self._in_flight:
            return error_result(BusyError("push already in progress"))
        if not self.connectivity.online:
            return error_result(OfflineError("offline"))
        self._in_flight = True
        try:
            return await self._drain()
        except Exception as ex:
            json_log("error", "sync.push.failed", entity=self.spec.name, error=str(ex))
            return error_result(ex)
        finally:
            self._in_flight = False

    async def _drain(self) -> dict[str, Any]:
        entity = self.spec.name
        started = time.time()
        entries = self.queue.dequeue_batch(entity)
        processed = failed = skipped = 0
        blocked: set[str] = set()

        for entry in entries:
            rid = entry["entity_id"]
            if rid in blocked or not self.connectivity.online:
                skipped += 1
                continue
            # Re-read: an earlier success in this cycle may have rebased expected_version.
            entry = self.queue.get(entry["id"])
            try:
                result = await self._apply(entry)
            except Exception as ex:
                failed += 1
                blocked.add(rid)
                self._record_failure(entry, ex)
                continue
            self._record_success(entry, result)
            processed += 1

        last_push: Optional[str] = None
        if processed > 0 or failed == 0:
            last_push = self.metadata.stamp_push(entity)

        json_log(
            "info",
            "sync.push.done",
            entity=entity,
            processed=processed,
            failed=failed,
            skipped=skipped,
            duration_ms=int((time.time() - started) * 1000),
        )
        return {"success": True, "processed": processed, "failed": failed, "skipped": skipped, "last_push": last_push}

    async def _apply(self, entry: dict[str, Any]) -> dict[str, Any]:
        op = entry["operation_type"]
        table = self.spec.remote_table
        rid = entry["entity_id"]
        data = dict(entry.get("data") or {})
        if op == "CREATE":
            return await self.remote.insert(table, {**data, "id": rid}) or {}
        if op == "UPDATE":
            expected = entry.get("expected_version") if self.spec.versioned else None
            return await self.remote.update(table, rid, data, expected_version=expected) or {}
        if op in ("DEACTIVATE", "ACTIVATE"):
            data["is_active"] = op == "ACTIVATE"
            if op == "ACTIVATE":
                data["deactivated_at"] = None
            return await self.remote.update(table, rid, data) or {}
        if op == "DELETE":
            await self.remote.delete(table, rid)
            return {}
        raise RemoteError(f"unknown operation_type {op}")

    def _record_success(self, entry: dict[str, Any], result: dict[str, Any]) -> None:
        entity = self.spec.name
        rid = entry["entity_id"]
        new_version = None
        if self.spec.versioned and result.get("version") is not None:
            new_version = int(result["version"])
        with self.store.db.transaction() as cur:
            self.queue.mark_processed(entry["id"], cur=cur)
            if new_version is not None:
                if entry["operation_type"] == "UPDATE":
                    base = entry.get("expected_version")
                else:
                    base = (entry.get("data") or {}).get("version")
                if base is not None and int(base) != new_version:
                    self.queue.rebase_expected_version(entity, rid, int(base), new_version, cur=cur)
            if self.queue.has_outstanding(entity, rid, cur=cur):
                if new_version is not None:
                    self.store.set_version(rid, new_version, cur=cur)
            else:
                self.store.mark_synced(rid, version=new_version, cur=cur)

    def _record_failure(self, entry: dict[str, Any], ex: Exception) -> None:
        entity = self.spec.name
        rid = entry["entity_id"]
        conflict = isinstance(ex, ConflictError)
        message = f"conflict: {ex}" if conflict else str(ex)
        with self.store.db.transaction() as cur:
            will_retry = self.queue.mark_failed(entry["id"], message, retryable=not conflict, cur=cur)
            self.store.mark_sync_error(rid, message, cur=cur)
        json_log(
            "warn" if will_retry else "error",
            "sync.push.entry_failed",
            entity=entity,
            entry_id=entry["id"],
            operation_type=entry["operation_type"],
            entity_id=rid,
            will_retry=will_retry,
            error=message,
        )

    async def resolve_conflict(self, entry_id: int, keep: str) -> dict[str, Any]:
        """
        Settle a failed entry against the backend's current row.

        keep="remote": drop every outstanding entry of the record and take the backend copy
        (or remove the record locally when the backend no longer has it).
        keep="local": rebase the record's outstanding entries onto the backend version and
        re-arm the failed one, so the next push resends the local edits.
        """
        if keep not in ("remote", "local"):
            raise ValidationError(f"keep must be 'remote' or 'local', not {keep!r}")
        if self._in_flight:
            raise BusyError("push already in progress")
        if not self.connectivity.online:
            raise OfflineError("offline")
        entity = self.spec.name
        entry = self.queue.get(entry_id)
        if entry["entity_type"] != entity:
            raise ValidationError(f"queue entry {entry_id} belongs to {entry['entity_type']}")
        if entry["status"] != "failed":
            raise ValidationError(f"queue entry {entry_id} is {entry['status']}, not failed")
        rid = entry["entity_id"]

        self._in_flight = True
        try:
            try:
                rows = await self.remote.select_all(self.spec.remote_table, {"id": rid})
            except Exception as ex:
                if isinstance(ex, RemoteError):
                    raise
                raise RemoteError(str(ex)) from ex
            row = rows[0] if rows else None

            with self.store.db.transaction() as cur:
                if keep == "remote":
                    dropped = self.queue.discard_outstanding(entity, rid, cur=cur)
                    if row is not None:
                        self.store.upsert_remote(row, cur=cur)
                    else:
                        self.store.prune([rid], cur=cur)
                    out: dict[str, Any] = {"kept": "remote", "entity_id": rid, "dropped": dropped}
                else:
                    if row is None and entry["operation_type"] != "CREATE":
                        raise NotFoundError(f"{entity} {rid} no longer exists on the backend")
                    rebased = 0
                    remote_version = None
                    if self.spec.versioned and row is not None:
                        remote_version = int(row.get("version") or 0)
                        base = entry.get("expected_version")
                        if base is not None and int(base) != remote_version:
                            rebased = self.queue.rebase_expected_version(entity, rid, int(base), remote_version, cur=cur)
                        self.store.set_version(rid, remote_version, cur=cur)
                    self.queue.retry_failed(entry_id, cur=cur)
                    self.store.mark_pending(rid, cur=cur)
                    out = {"kept": "local", "entity_id": rid, "rebased": rebased, "remote_version": remote_version}
        finally:
            self._in_flight = False

        json_log("info", "sync.conflict.resolved", entity=entity, entry_id=entry_id, **out)
        return out
