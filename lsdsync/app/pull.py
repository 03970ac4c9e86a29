from __future__ import annotations

import time
from typing import Any

from .connectivity import Connectivity
from .entities import EntitySpec
from .errors import OfflineError, RemoteError, error_result
from .jsonlog import json_log
from .local_store import LocalStore
from .metadata import SyncMetadata
from .reconcile import RemoteChangeApplier
from .sync_queue import OperationQueue


class PullEngine:
    """
    One-shot remote -> local reconciliation for one entity.

    The whole remote set is fetched before anything local is touched, then applied in a
    single SQLite transaction: a failed fetch leaves the store and `last_pull` as they were.
    """

    def __init__(
        self,
        spec: EntitySpec,
        store: LocalStore,
        queue: OperationQueue,
        remote,
        connectivity: Connectivity,
        metadata: SyncMetadata,
        applier: RemoteChangeApplier,
        prune_missing: bool = True,
    ):
        self.spec = spec
        self.store = store
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.metadata = metadata
        self.applier = applier
        self.prune_missing = prune_missing

    async def pull(self) -> dict[str, Any]:
        entity = self.spec.name
        if not self.connectivity.online:
            return error_result(OfflineError("offline"))

        started = time.time()
        filters = self.spec.pull_filter() if self.spec.pull_filter else None
        try:
            rows = await self.remote.select_all(self.spec.remote_table, filters)
        except Exception as ex:
            err = ex if isinstance(ex, RemoteError) else RemoteError(str(ex))
            json_log("error", "sync.pull.fetch_failed", entity=entity, error=err.message)
            return error_result(err)

        try:
            with self.store.db.transaction() as cur:
                res = self.applier.upsert(rows, cur=cur)
                pruned = 0
                if self.prune_missing:
                    # Synced rows the backend no longer returns were deleted (or fell out of
                    # the pull filter) remotely. Rows with local work in flight stay.
                    remote_ids = {str(r.get("id")) for r in rows if r.get("id")}
                    stale = self.store.ids(sync_status="synced", cur=cur) - remote_ids - self.queue.outstanding_ids(entity, cur=cur)
                    pruned = self.store.prune(stale, cur=cur)
                last_pull = self.metadata.stamp_pull(entity, cur=cur)
        except Exception as ex:
            json_log("error", "sync.pull.apply_failed", entity=entity, error=str(ex))
            return error_result(ex)

        json_log(
            "info",
            "sync.pull.done",
            entity=entity,
            fetched=len(rows),
            applied=res["applied"],
            kept_local=res["kept_local"],
            skipped=res["skipped"],
            pruned=pruned,
            duration_ms=int((time.time() - started) * 1000),
        )
        return {
            "success": True,
            "count": res["applied"],
            "kept_local": res["kept_local"],
            "skipped": res["skipped"],
            "pruned": pruned,
            "last_pull": last_pull,
        }
