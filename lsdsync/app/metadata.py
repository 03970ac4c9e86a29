from datetime import datetime, timezone
from typing import Optional

from .db import LocalDB


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


def parse_ts(raw) -> Optional[datetime]:
    if not raw:
        return None
    if isinstance(raw, datetime):
        ts = raw
    else:
        try:
            ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


INITIAL_SYNC_KEY = "initial_sync_done"


class SyncMetadata:
    """Process-wide key/value checkpoints (`<entity>.last_pull`, `<entity>.last_push`, ...)."""

    def __init__(self, db: LocalDB):
        self.db = db

    def get(self, key: str, cur=None) -> Optional[str]:
        with self.db.read(cur) as c:
            c.execute("SELECT value FROM sync_metadata WHERE key = ?", (key,))
            row = c.fetchone()
            return row["value"] if row else None

    def set(self, key: str, value, cur=None) -> None:
        with self.db.transaction(cur) as c:
            c.execute(
                """
                INSERT INTO sync_metadata (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  value=excluded.value,
                  updated_at=excluded.updated_at
                """,
                (key, None if value is None else str(value), now_iso()),
            )

    def last_pull(self, entity: str) -> Optional[datetime]:
        return parse_ts(self.get(f"{entity}.last_pull"))

    def last_push(self, entity: str) -> Optional[datetime]:
        return parse_ts(self.get(f"{entity}.last_push"))

    def stamp_pull(self, entity: str, cur=None) -> str:
        ts = now_iso()
        self.set(f"{entity}.last_pull", ts, cur=cur)
        return ts

    def stamp_push(self, entity: str) -> str:
        ts = now_iso()
        self.set(f"{entity}.last_push", ts)
        return ts

    def initial_sync_done(self) -> bool:
        return (self.get(INITIAL_SYNC_KEY) or "").lower() == "true"

    def mark_initial_sync_done(self) -> None:
        self.set(INITIAL_SYNC_KEY, "true")
