from __future__ import annotations

import asyncio
import inspect
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from .errors import ConflictError, RemoteError
from .jsonlog import json_log
from .remote import ChangeHandler, normalize_filters

_SQL_OPS = {"eq": "=", "gte": ">=", "lte": "<="}

# Never written by a client patch; the server owns them.
_SERVER_FIELDS = ("id", "version")


def _param(v):
    # psycopg would adapt a list as a Postgres array; the tables store lists/dicts as jsonb.
    if isinstance(v, (dict, list)):
        return Jsonb(v)
    return v


def _row_out(row) -> dict[str, Any]:
    out = {}
    for k, v in dict(row).items():
        out[k] = str(v) if isinstance(v, uuid.UUID) else v
    return out


class _Subscription:
    def __init__(self, table: str, channel: str, conn, handlers: dict[str, ChangeHandler]):
        self.table = table
        self.channel = channel
        self.conn = conn
        self.handlers = handlers
        self.task: Optional[asyncio.Task] = None


class PostgresRemote:
    """
    Remote backend over the hosted Postgres.

    Reads page by primary key, writes are idempotent by id, versioned updates are
    compare-and-set on `version`. Change events come from LISTEN on `<table>_changes`,
    fed by the trigger in `lsdsync/db/realtime.sql`.
    """

    def __init__(self, conninfo: str, *, min_size: int = 1, max_size: int = 4, page_size: int = 1000, pool=None):
        if not conninfo and pool is None:
            raise RemoteError("remote database URL is not configured")
        self.conninfo = conninfo
        self.page_size = max(1, int(page_size))
        self._pool = pool or AsyncConnectionPool(
            conninfo=conninfo,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        self._subscriptions: list[_Subscription] = []

    @classmethod
    def from_settings(cls, settings) -> "PostgresRemote":
        return cls(
            settings.remote_db_url,
            min_size=settings.remote_pool_min,
            max_size=settings.remote_pool_max,
            page_size=settings.remote_page_size,
        )

    async def open(self) -> None:
        await self._pool.open()

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await self.unsubscribe(sub)
        await self._pool.close()

    @asynccontextmanager
    async def _conn(self):
        # Commit on success, rollback on exception, connection back to the pool.
        try:
            async with self._pool.connection() as conn:
                yield conn
        except psycopg.Error as ex:
            raise RemoteError(str(ex).strip() or ex.__class__.__name__) from ex

    # -- reads -------------------------------------------------------------

    async def select_all(self, table: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        conds = []
        params: list[Any] = []
        for col, op, value in normalize_filters(filters):
            conds.append(sql.SQL("{} {} %s").format(sql.Identifier(col), sql.SQL(_SQL_OPS[op])))
            params.append(value)

        rows: list[dict[str, Any]] = []
        last_id = None
        async with self._conn() as conn:
            while True:
                where = list(conds)
                page_params = list(params)
                if last_id is not None:
                    where.append(sql.SQL("id > %s"))
                    page_params.append(last_id)
                q = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table))
                if where:
                    q = q + sql.SQL(" WHERE ") + sql.SQL(" AND ").join(where)
                q = q + sql.SQL(" ORDER BY id LIMIT %s")
                page_params.append(self.page_size)
                async with conn.cursor() as cur:
                    await cur.execute(q, page_params)
                    page = await cur.fetchall()
                rows.extend(_row_out(r) for r in page)
                if len(page) < self.page_size:
                    break
                last_id = page[-1]["id"]
        return rows

    async def _fetch_by_id(self, conn, table: str, record_id: str) -> Optional[dict[str, Any]]:
        async with conn.cursor() as cur:
            await cur.execute(sql.SQL("SELECT * FROM {} WHERE id = %s").format(sql.Identifier(table)), (record_id,))
            row = await cur.fetchone()
        return _row_out(row) if row else None

    async def fetch(self, table: str, record_id: str) -> Optional[dict[str, Any]]:
        async with self._conn() as conn:
            return await self._fetch_by_id(conn, table, record_id)

    # -- writes ------------------------------------------------------------

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        if not record.get("id"):
            raise RemoteError("insert requires an id")
        cols = list(record.keys())
        q = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT (id) DO NOTHING").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join([sql.Placeholder()] * len(cols)),
        )
        async with self._conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute(q, [_param(record[c]) for c in cols])
            # A replayed CREATE finds the row already there; either way return what the server has.
            row = await self._fetch_by_id(conn, table, record["id"])
        return row or {}

    async def update(
        self,
        table: str,
        record_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> dict[str, Any]:
        fields = {k: v for k, v in (patch or {}).items() if k not in _SERVER_FIELDS}
        sets = [sql.SQL("{} = %s").format(sql.Identifier(k)) for k in fields]
        params: list[Any] = [_param(v) for v in fields.values()]
        if expected_version is not None:
            sets.append(sql.SQL("version = version + 1"))

        async with self._conn() as conn:
            if not sets:
                row = await self._fetch_by_id(conn, table, record_id)
                if row is None:
                    raise RemoteError(f"{table} {record_id} not found on remote")
                return row
            q = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(sql.Identifier(table), sql.SQL(", ").join(sets))
            params.append(record_id)
            if expected_version is not None:
                q = q + sql.SQL(" AND version = %s")
                params.append(int(expected_version))
            q = q + sql.SQL(" RETURNING *")
            async with conn.cursor() as cur:
                await cur.execute(q, params)
                row = await cur.fetchone()
            if row is not None:
                return _row_out(row)
            current = await self._fetch_by_id(conn, table, record_id)
        if current is None:
            raise RemoteError(f"{table} {record_id} not found on remote")
        raise ConflictError(
            f"{table} {record_id} changed remotely",
            {"expected_version": expected_version, "remote_version": current.get("version")},
        )

    async def delete(self, table: str, record_id: str) -> None:
        async with self._conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql.SQL("DELETE FROM {} WHERE id = %s").format(sql.Identifier(table)), (record_id,))

    async def health(self) -> bool:
        try:
            async with self._conn() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1 AS ok")
                    row = await cur.fetchone()
        except RemoteError:
            return False
        return bool(row and row["ok"] == 1)

    # -- realtime ------------------------------------------------------------

    async def subscribe(
        self,
        table: str,
        on_insert: ChangeHandler,
        on_update: ChangeHandler,
        on_delete: ChangeHandler,
    ) -> _Subscription:
        channel = f"{table}_changes"
        try:
            conn = await psycopg.AsyncConnection.connect(self.conninfo, autocommit=True, row_factory=dict_row)
            await conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))
        except psycopg.Error as ex:
            raise RemoteError(f"subscribe {channel} failed: {ex}") from ex
        sub = _Subscription(table, channel, conn, {"INSERT": on_insert, "UPDATE": on_update, "DELETE": on_delete})
        sub.task = asyncio.get_running_loop().create_task(self._listen(sub))
        self._subscriptions.append(sub)
        return sub

    async def unsubscribe(self, handle: _Subscription) -> None:
        if handle in self._subscriptions:
            self._subscriptions.remove(handle)
        if handle.task is not None:
            handle.task.cancel()
            try:
                await handle.task
            except asyncio.CancelledError:
                pass
        try:
            await handle.conn.close()
        except psycopg.Error as ex:
            json_log("warn", "realtime.close_failed", table=handle.table, error=str(ex))

    async def _listen(self, sub: _Subscription) -> None:
        try:
            async for notify in sub.conn.notifies():
                await self.dispatch(sub, notify.payload)
        except psycopg.Error as ex:
            json_log("error", "realtime.connection_lost", table=sub.table, channel=sub.channel, error=str(ex))

    async def dispatch(self, sub: _Subscription, payload: str) -> None:
        """
        Payload: {"op": "INSERT"|"UPDATE"|"DELETE", "id": ..., "record": {...}}.
        Rows too large for NOTIFY arrive without "record" and are read back.
        """
        try:
            msg = json.loads(payload)
            op = str(msg.get("op") or "").upper()
            handler = sub.handlers.get(op)
            if handler is None:
                json_log("warn", "realtime.unknown_op", table=sub.table, op=op)
                return
            record = msg.get("record")
            if op == "DELETE":
                record = record or {"id": msg.get("id")}
            elif record is None:
                record = await self.fetch(sub.table, str(msg.get("id")))
                if record is None:
                    return
            res = handler(_row_out(record))
            if inspect.isawaitable(res):
                await res
        except Exception as ex:
            json_log("error", "realtime.dispatch_failed", table=sub.table, error=str(ex))
