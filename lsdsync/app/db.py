import os
import sqlite3
from contextlib import contextmanager
from typing import Iterable, Optional

from .entities import ENTITIES, EntitySpec
from .validation import OPERATION_TYPES, QUEUE_STATUSES


def _entity_ddl(spec: EntitySpec) -> list[str]:
    t = spec.name
    stmts = [
        f"""
        CREATE TABLE IF NOT EXISTS {t} (
          id TEXT PRIMARY KEY,
          data_json TEXT NOT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          sync_status TEXT NOT NULL DEFAULT 'pending',
          sync_error TEXT,
          created_at TEXT,
          updated_at TEXT,
          local_updated_at TEXT NOT NULL,
          last_synced_at TEXT
        )
        """,
        f"CREATE INDEX IF NOT EXISTS idx_{t}_is_active ON {t}(is_active)",
        f"CREATE INDEX IF NOT EXISTS idx_{t}_sync_status ON {t}(sync_status)",
        f"CREATE INDEX IF NOT EXISTS idx_{t}_updated_at ON {t}(local_updated_at)",
    ]
    return stmts


_QUEUE_DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS sync_queue (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      entity_type TEXT NOT NULL,
      operation_type TEXT NOT NULL CHECK (operation_type IN ({",".join(repr(o) for o in OPERATION_TYPES)})),
      entity_id TEXT NOT NULL,
      data_json TEXT NOT NULL DEFAULT '{{}}',
      status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ({",".join(repr(s) for s in QUEUE_STATUSES)})),
      created_at TEXT NOT NULL,
      retry_count INTEGER NOT NULL DEFAULT 0,
      max_retries INTEGER NOT NULL DEFAULT 3,
      last_error TEXT,
      last_error_at TEXT,
      processed_at TEXT,
      expected_version INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity_type, entity_id, id)",
    """
    CREATE TABLE IF NOT EXISTS sync_metadata (
      key TEXT PRIMARY KEY,
      value TEXT,
      updated_at TEXT NOT NULL
    )
    """,
]


class LocalDB:
    """
    On-device SQLite file holding the entity caches, the operation queue and sync metadata.

    One instance per process. Connections are short-lived: each `transaction()` opens one,
    commits on success, rolls back on exception, and closes it. `read()` opens one without
    taking the write lock, for queries that only select.
    """

    def __init__(self, path: str, entities: Optional[Iterable[EntitySpec]] = None):
        self.path = path
        self.entities = list(entities or ENTITIES.values())
        self.init_schema()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self, cur: Optional[sqlite3.Cursor] = None):
        # Nested callers pass their cursor through so store + queue writes share one commit.
        if cur is not None:
            yield cur
            return
        conn = self.connect()
        try:
            c = conn.cursor()
            c.execute("BEGIN IMMEDIATE")
            yield c
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def read(self, cur: Optional[sqlite3.Cursor] = None):
        if cur is not None:
            yield cur
            return
        conn = self.connect()
        try:
            yield conn.cursor()
        finally:
            conn.close()

    def init_schema(self) -> None:
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)
        conn = self.connect()
        try:
            cur = conn.cursor()
            cur.execute("PRAGMA journal_mode = WAL")
            for spec in self.entities:
                for stmt in _entity_ddl(spec):
                    cur.execute(stmt)
            for stmt in _QUEUE_DDL:
                cur.execute(stmt)
            # CREATE TABLE IF NOT EXISTS does not add new columns. Keep a tiny
            # runtime migration layer for index columns declared after the file was created.
            for spec in self.entities:
                cur.execute(f"PRAGMA table_info({spec.name})")
                cols = {r[1] for r in cur.fetchall()}
                for col in spec.index_fields:
                    if col not in cols:
                        cur.execute(f"ALTER TABLE {spec.name} ADD COLUMN {col} TEXT")
                    cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{spec.name}_{col} ON {spec.name}({col})")
            conn.commit()
        finally:
            conn.close()

    def counts(self) -> dict[str, int]:
        out = {}
        conn = self.connect()
        try:
            cur = conn.cursor()
            for table in [s.name for s in self.entities] + ["sync_queue", "sync_metadata"]:
                cur.execute(f"SELECT COUNT(1) FROM {table}")
                out[table] = int(cur.fetchone()[0])
        finally:
            conn.close()
        return out

    def reset(self) -> None:
        with self.transaction() as cur:
            for spec in self.entities:
                cur.execute(f"DELETE FROM {spec.name}")
            cur.execute("DELETE FROM sync_queue")
            cur.execute("DELETE FROM sync_metadata")
