#!/usr/bin/env python3
"""
Headless sync agent.

Runs the sync engine for one terminal without the HTTP API: realtime listeners and the
auto-sync timer while the backend is reachable, queued local writes flushed on reconnect.
Connectivity comes from a periodic health probe against the remote database.
"""

import argparse
import asyncio
import sys
import traceback

from lsdsync.app.config import settings
from lsdsync.app.connectivity import Connectivity, ConnectivityProbe
from lsdsync.app.db import LocalDB
from lsdsync.app.engine import SyncEngine
from lsdsync.app.jsonlog import json_log
from lsdsync.app.remote_pg import PostgresRemote


def build_engine(args, remote, connectivity: Connectivity) -> SyncEngine:
    return SyncEngine(
        LocalDB(args.db),
        remote,
        connectivity,
        max_retries=args.max_retries,
        interval_seconds=args.interval,
        retention_days=settings.processed_retention_days,
        needs_sync_minutes=settings.needs_sync_minutes,
    )


async def run_once(engine: SyncEngine, probe: ConnectivityProbe, entity=None) -> int:
    if not await probe.check():
        json_log("warn", "agent.offline")
        return 1
    res = await engine.sync_full(entity)
    json_log("info", "agent.sync_once", success=res["success"], error=res.get("error"), result=res.get("data"))
    return 0 if res["success"] else 1


async def run_forever(engine: SyncEngine, probe: ConnectivityProbe, heartbeat_seconds: float) -> int:
    await engine.start()
    await probe.check()
    probe.start()
    while True:
        await asyncio.sleep(heartbeat_seconds)
        try:
            status = engine.get_sync_status()["data"]
            json_log(
                "info",
                "agent.heartbeat",
                online=status["online"],
                syncing=status["syncing"],
                pending=status["pending"],
                failed=status["failed"],
            )
        except Exception as ex:
            # Never crash the agent loop on a status read.
            json_log("error", "agent.heartbeat.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)


async def run(args) -> int:
    remote = PostgresRemote(
        args.remote,
        min_size=settings.remote_pool_min,
        max_size=settings.remote_pool_max,
        page_size=settings.remote_page_size,
    )
    await remote.open()
    connectivity = Connectivity(online=False)
    engine = build_engine(args, remote, connectivity)
    probe = ConnectivityProbe(connectivity, remote, interval_seconds=args.probe_interval)
    json_log("info", "agent.started", db=args.db, once=args.once, interval_seconds=args.interval)
    try:
        if args.once:
            return await run_once(engine, probe, args.entity)
        return await run_forever(engine, probe, args.heartbeat)
    finally:
        await probe.stop()
        await engine.stop()
        await remote.close()
        json_log("info", "agent.stopped")


def main() -> int:
    parser = argparse.ArgumentParser(description="Offline-first sync agent for the POS local cache.")
    parser.add_argument("--db", default=settings.local_db_path, help="Local SQLite file (defaults to $LSD_LOCAL_DB_PATH).")
    parser.add_argument("--remote", default=settings.remote_db_url, help="Remote Postgres URL (defaults to $LSD_REMOTE_DATABASE_URL).")
    parser.add_argument("--interval", type=float, default=settings.auto_sync_interval_seconds, help="Auto-sync interval in seconds.")
    parser.add_argument("--probe-interval", type=float, default=settings.connectivity_probe_seconds)
    parser.add_argument("--heartbeat", type=float, default=60.0)
    parser.add_argument("--max-retries", type=int, default=settings.queue_max_retries)
    parser.add_argument("--entity", choices=["addresses", "orders", "couriers"], help="With --once: only sync this entity")
    parser.add_argument("--once", action="store_true", help="Run a single full sync and exit")
    args = parser.parse_args()

    if not args.remote:
        print("remote database URL is required (--remote or LSD_REMOTE_DATABASE_URL)", file=sys.stderr)
        return 2
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
