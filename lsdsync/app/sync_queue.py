from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Optional

from .db import LocalDB
from .errors import NotFoundError, ValidationError
from .metadata import now_iso, utcnow
from .validation import OPERATION_TYPES

DEFAULT_MAX_RETRIES = 3


def _row_to_entry(row) -> dict[str, Any]:
    out = dict(row)
    out["data"] = json.loads(out.pop("data_json") or "{}")
    return out


class OperationQueue:
    """
    Ordered, durable log of local mutations the backend has not confirmed yet.

    The autoincrement `id` is the insertion clock: entries are always drained in `id`
    order, which keeps same-entity operations in the order they were enqueued even
    when wall-clock `created_at` values collide or go backwards.
    """

    def __init__(self, db: LocalDB, max_retries: int = DEFAULT_MAX_RETRIES):
        self.db = db
        self.max_retries = max_retries

    def enqueue(
        self,
        entity_type: str,
        operation_type: str,
        entity_id: str,
        data: Optional[dict[str, Any]] = None,
        *,
        expected_version: Optional[int] = None,
        cur=None,
    ) -> int:
        op = str(operation_type or "").strip().upper()
        if op not in OPERATION_TYPES:
            raise ValidationError(
                f"invalid operation_type {operation_type!r}",
                {"allowed": list(OPERATION_TYPES)},
            )
        if not entity_id:
            raise ValidationError("entity_id is required")
        if not entity_type:
            raise ValidationError("entity_type is required")
        with self.db.transaction(cur) as c:
            c.execute(
                """
                INSERT INTO sync_queue
                  (entity_type, operation_type, entity_id, data_json, status, created_at, retry_count, max_retries, expected_version)
                VALUES (?, ?, ?, ?, 'pending', ?, 0, ?, ?)
                """,
                (
                    entity_type,
                    op,
                    str(entity_id),
                    json.dumps(data or {}, default=str),
                    now_iso(),
                    self.max_retries,
                    expected_version,
                ),
            )
            return int(c.lastrowid)

    def get(self, entry_id: int, cur=None) -> dict[str, Any]:
        with self.db.read(cur) as c:
            c.execute("SELECT * FROM sync_queue WHERE id = ?", (int(entry_id),))
            row = c.fetchone()
            if not row:
                raise NotFoundError(f"queue entry {entry_id} not found")
            return _row_to_entry(row)

    def dequeue_batch(self, entity_type: Optional[str] = None, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """
        Entries to push next, oldest first: everything pending plus failed entries with retries left.

        An entry is held back while an earlier entry for the same entity is failed with no
        retries left; applying it would reorder that entity's history.
        """
        sql = """
            SELECT q.* FROM sync_queue q
            WHERE (q.status = 'pending' OR (q.status = 'failed' AND q.retry_count < q.max_retries))
              AND NOT EXISTS (
                SELECT 1 FROM sync_queue d
                WHERE d.entity_type = q.entity_type
                  AND d.entity_id = q.entity_id
                  AND d.id < q.id
                  AND d.status = 'failed'
                  AND d.retry_count >= d.max_retries
              )
        """
        params: list[Any] = []
        if entity_type:
            sql += " AND q.entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY q.id ASC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self.db.read() as c:
            c.execute(sql, tuple(params))
            return [_row_to_entry(r) for r in c.fetchall()]

    def mark_processed(self, entry_id: int, cur=None) -> None:
        with self.db.transaction(cur) as c:
            c.execute(
                "UPDATE sync_queue SET status = 'processed', processed_at = ?, last_error = NULL WHERE id = ?",
                (now_iso(), int(entry_id)),
            )
            if c.rowcount == 0:
                raise NotFoundError(f"queue entry {entry_id} not found")

    def mark_failed(self, entry_id: int, reason: str, *, retryable: bool = True, cur=None) -> bool:
        """Record a failed attempt. Returns True if the entry will be retried by a later push."""
        with self.db.transaction(cur) as c:
            entry = self.get(entry_id, cur=c)
            retry_count = int(entry["retry_count"]) + 1
            max_retries = int(entry["max_retries"])
            if not retryable:
                retry_count = max(retry_count, max_retries)
            c.execute(
                """
                UPDATE sync_queue
                SET status = 'failed', retry_count = ?, last_error = ?, last_error_at = ?
                WHERE id = ?
                """,
                (retry_count, str(reason or "")[:2000], now_iso(), int(entry_id)),
            )
            return retry_count < max_retries

    def retry_failed(self, entry_id: int, cur=None) -> None:
        with self.db.transaction(cur) as c:
            c.execute(
                "UPDATE sync_queue SET status = 'pending', retry_count = 0 WHERE id = ? AND status = 'failed'",
                (int(entry_id),),
            )
            if c.rowcount == 0:
                raise NotFoundError(f"failed queue entry {entry_id} not found")

    def retry_all_failed(self, entity_type: Optional[str] = None) -> int:
        with self.db.transaction() as c:
            if entity_type:
                c.execute(
                    "UPDATE sync_queue SET status = 'pending', retry_count = 0 WHERE status = 'failed' AND entity_type = ?",
                    (entity_type,),
                )
            else:
                c.execute("UPDATE sync_queue SET status = 'pending', retry_count = 0 WHERE status = 'failed'")
            return c.rowcount

    def cleanup_processed(self, days_old: int = 7) -> int:
        cutoff = (utcnow() - timedelta(days=days_old)).isoformat()
        with self.db.transaction() as c:
            c.execute(
                "DELETE FROM sync_queue WHERE status = 'processed' AND COALESCE(processed_at, created_at) < ?",
                (cutoff,),
            )
            return c.rowcount

    def stats(self, entity_type: Optional[str] = None) -> dict[str, Any]:
        sql = """
            SELECT status, operation_type, retry_count >= max_retries AS exhausted, COUNT(1) AS n
            FROM sync_queue
        """
        params: tuple = ()
        if entity_type:
            sql += " WHERE entity_type = ?"
            params = (entity_type,)
        sql += " GROUP BY status, operation_type, exhausted"
        out = {
            "total": 0,
            "pending": 0,
            "processed": 0,
            "failed": 0,
            "retryable": 0,
            "by_operation_type": {op: 0 for op in OPERATION_TYPES},
        }
        with self.db.read() as c:
            c.execute(sql, params)
            for r in c.fetchall():
                n = int(r["n"])
                out["total"] += n
                out[r["status"]] += n
                out["by_operation_type"][r["operation_type"]] += n
                if r["status"] == "failed" and not r["exhausted"]:
                    out["retryable"] += n
        return out

    def operations_for_entity(self, entity_id: str, entity_type: Optional[str] = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM sync_queue WHERE entity_id = ?"
        params: list[Any] = [str(entity_id)]
        if entity_type:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY id ASC"
        with self.db.read() as c:
            c.execute(sql, tuple(params))
            return [_row_to_entry(r) for r in c.fetchall()]

    def outstanding_ids(self, entity_type: str, cur=None) -> set[str]:
        """Entity ids that still have something to tell the backend (pending or failed)."""
        with self.db.read(cur) as c:
            c.execute(
                "SELECT DISTINCT entity_id FROM sync_queue WHERE entity_type = ? AND status != 'processed'",
                (entity_type,),
            )
            return {r["entity_id"] for r in c.fetchall()}

    def has_outstanding(self, entity_type: str, entity_id: str, cur=None) -> bool:
        with self.db.read(cur) as c:
            c.execute(
                "SELECT 1 FROM sync_queue WHERE entity_type = ? AND entity_id = ? AND status != 'processed' LIMIT 1",
                (entity_type, str(entity_id)),
            )
            return c.fetchone() is not None

    def rebase_expected_version(self, entity_type: str, entity_id: str, old_version: int, new_version: int, cur=None) -> int:
        """After our own accepted write bumped the row, later queued edits are based on the new version."""
        with self.db.transaction(cur) as c:
            c.execute(
                """
                UPDATE sync_queue SET expected_version = ?
                WHERE entity_type = ? AND entity_id = ? AND status != 'processed' AND expected_version = ?
                """,
                (int(new_version), entity_type, str(entity_id), int(old_version)),
            )
            return c.rowcount

    def failed_entries(self, entity_type: Optional[str] = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM sync_queue WHERE status = 'failed'"
        params: tuple = ()
        if entity_type:
            sql += " AND entity_type = ?"
            params = (entity_type,)
        sql += " ORDER BY id ASC"
        with self.db.read() as c:
            c.execute(sql, params)
            return [_row_to_entry(r) for r in c.fetchall()]

    def discard_outstanding(self, entity_type: str, entity_id: str, cur=None) -> int:
        """Drop every pending or failed entry of one record. Processed history stays."""
        with self.db.transaction(cur) as c:
            c.execute(
                "DELETE FROM sync_queue WHERE entity_type = ? AND entity_id = ? AND status != 'processed'",
                (entity_type, str(entity_id)),
            )
            return c.rowcount

    def clear(self) -> None:
        with self.db.transaction() as c:
            c.execute("DELETE FROM sync_queue")
