from __future__ import annotations

from typing import Any, Iterable

from .errors import ValidationError
from .jsonlog import json_log
from .local_store import LocalStore
from .sync_queue import OperationQueue


class RemoteChangeApplier:
    """
    The one path by which backend state lands in the local store, shared by pull and
    the realtime listener. Upserts are keyed by id, so applying the same change twice
    leaves the store exactly as applying it once.

    With `preserve_pending`, a record that still has unconfirmed local operations keeps
    its optimistic local copy; the push will tell the backend and a later pull reconciles.
    """

    def __init__(self, store: LocalStore, queue: OperationQueue, preserve_pending: bool = True):
        self.store = store
        self.queue = queue
        self.preserve_pending = preserve_pending

    def upsert(self, records: Iterable[dict[str, Any]], cur=None) -> dict[str, int]:
        applied = skipped = kept_local = 0
        entity = self.store.spec.name
        with self.store.db.transaction(cur) as c:
            outstanding = self.queue.outstanding_ids(entity, cur=c) if self.preserve_pending else set()
            for rec in records:
                rid = str(rec.get("id") or "")
                if not rid:
                    skipped += 1
                    continue
                if rid in outstanding:
                    kept_local += 1
                    continue
                try:
                    self.store.upsert_remote(rec, cur=c)
                    applied += 1
                except ValidationError as e:
                    skipped += 1
                    json_log("warn", "sync.apply.invalid_record", entity=entity, id=rid, error=e.message)
        return {"applied": applied, "skipped": skipped, "kept_local": kept_local}

    def delete(self, record_ids: Iterable[str], cur=None) -> int:
        # Deletions are authoritative: any queued edit for the id will fail at push and surface.
        return self.store.prune(record_ids, cur=cur)
