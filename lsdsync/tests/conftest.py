import os
import sys


# Allow running pytest from either the repo root or from within `lsdsync/`.
# Tests import `lsdsync.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import asyncio

import pytest

from lsdsync.app.connectivity import Connectivity
from lsdsync.app.db import LocalDB
from lsdsync.app.engine import SyncEngine
from lsdsync.app.errors import ConflictError, RemoteError


class FakeRemote:
    """In-memory stand-in for the hosted database, with a call log and failure injection."""

    versioned_tables = ("orders",)

    def __init__(self):
        self.tables = {"addresses": {}, "orders": {}, "couriers": {}}
        self.calls = []
        # {entity_id: exc} fails every write for that id; {(op, entity_id): exc} only that op.
        self.failures = {}
        self.select_error = None
        self.healthy = True
        self.gate = None
        # Seconds an update takes after it has been applied remotely.
        self.update_delay = 0
        self.handlers = {}
        self.subscribe_count = 0

    def seed(self, table, *records):
        for r in records:
            self.tables[table][r["id"]] = dict(r)

    def _maybe_fail(self, op, record_id):
        exc = self.failures.get((op, record_id)) or self.failures.get(record_id)
        if exc is not None:
            raise exc

    async def select_all(self, table, filters=None):
        self.calls.append(("select_all", table, filters))
        if self.select_error is not None:
            raise self.select_error
        rows = []
        for r in self.tables[table].values():
            ok = True
            for col, cond in (filters or {}).items():
                op, value = cond if isinstance(cond, tuple) else ("eq", cond)
                have = str(r.get(col) or "")
                if op == "eq":
                    ok = ok and have == str(value)
                elif op == "gte":
                    ok = ok and have >= str(value)
                elif op == "lte":
                    ok = ok and have <= str(value)
            if ok:
                rows.append(dict(r))
        return rows

    async def insert(self, table, record):
        self.calls.append(("insert", table, record["id"]))
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_fail("insert", record["id"])
        row = self.tables[table].setdefault(record["id"], dict(record))
        if table in self.versioned_tables:
            row.setdefault("version", 0)
        return dict(row)

    async def update(self, table, record_id, patch, expected_version=None):
        self.calls.append(("update", table, record_id))
        self._maybe_fail("update", record_id)
        row = self.tables[table].get(record_id)
        if row is None:
            raise RemoteError(f"{table} {record_id} not found on remote")
        if expected_version is not None:
            if int(row.get("version") or 0) != int(expected_version):
                raise ConflictError(f"{table} {record_id} changed remotely")
            row["version"] = int(row.get("version") or 0) + 1
        row.update({k: v for k, v in patch.items() if k not in ("id", "version")})
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        return dict(row)

    async def delete(self, table, record_id):
        self.calls.append(("delete", table, record_id))
        self._maybe_fail("delete", record_id)
        self.tables[table].pop(record_id, None)

    async def subscribe(self, table, on_insert, on_update, on_delete):
        self.subscribe_count += 1
        self.handlers[table] = {"INSERT": on_insert, "UPDATE": on_update, "DELETE": on_delete}
        return table

    async def unsubscribe(self, handle):
        self.handlers.pop(handle, None)

    async def emit(self, table, op, record):
        res = self.handlers[table][op](record)
        if asyncio.iscoroutine(res):
            await res

    async def health(self):
        return self.healthy

    def ops_for(self, record_id):
        return [c[0] for c in self.calls if c[0] != "select_all" and c[2] == record_id]


@pytest.fixture
def local_db(tmp_path):
    return LocalDB(str(tmp_path / "local.sqlite"))


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def connectivity():
    return Connectivity(online=True)


@pytest.fixture
def engine(local_db, remote, connectivity):
    # interval 0 disables the auto-sync timer; tests drive cycles explicitly.
    return SyncEngine(local_db, remote, connectivity, interval_seconds=0)
