#!/usr/bin/env python3
import argparse
import json
import sys

from lsdsync.app.address_io import load_seed_file
from lsdsync.app.config import settings
from lsdsync.app.db import LocalDB
from lsdsync.app.engine import AddressService
from lsdsync.app.entities import ADDRESSES, ENTITIES
from lsdsync.app.errors import SyncError
from lsdsync.app.local_store import LocalStore
from lsdsync.app.metadata import SyncMetadata
from lsdsync.app.sync_queue import OperationQueue


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def cmd_stats(db: LocalDB, args) -> int:
    _print(
        {
            "path": db.path,
            "tables": db.counts(),
            "entities": {name: LocalStore(db, spec).stats() for name, spec in ENTITIES.items()},
            "queue": OperationQueue(db).stats(),
            "initial_sync_done": SyncMetadata(db).initial_sync_done(),
        }
    )
    return 0


def cmd_queue(db: LocalDB, args) -> int:
    q = OperationQueue(db)
    if args.entity_id:
        entries = q.operations_for_entity(args.entity_id, args.entity)
    else:
        entries = q.dequeue_batch(args.entity, limit=args.limit)
    _print(entries)
    return 0


def cmd_retry_failed(db: LocalDB, args) -> int:
    q = OperationQueue(db)
    if args.id is not None:
        q.retry_failed(args.id)
        _print({"retried": 1})
    else:
        _print({"retried": q.retry_all_failed(args.entity)})
    return 0


def cmd_cleanup(db: LocalDB, args) -> int:
    _print({"removed": OperationQueue(db).cleanup_processed(args.days)})
    return 0


def cmd_clear_queue(db: LocalDB, args) -> int:
    if not args.yes:
        print("refusing to drop every queued operation without --yes", file=sys.stderr)
        return 2
    OperationQueue(db).clear()
    print("OK")
    return 0


def cmd_seed_addresses(db: LocalDB, args) -> int:
    items = load_seed_file(args.file)
    service = AddressService(ADDRESSES, LocalStore(db, ADDRESSES), OperationQueue(db))

    def _progress(done, total, _item):
        if done == total or done % 50 == 0:
            print(f"{done}/{total}", file=sys.stderr)

    res = service.import_addresses(items, on_progress=_progress)
    if not res["success"]:
        print(res["error"], file=sys.stderr)
        return 1
    _print(res["data"])
    return 0 if res["data"]["failed"] == 0 else 1


def cmd_reset(db: LocalDB, args) -> int:
    if not args.yes:
        print("refusing to wipe the local cache and queue without --yes", file=sys.stderr)
        return 2
    db.reset()
    print("OK")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect and maintain the POS local sync database.")
    parser.add_argument("--db", default=settings.local_db_path, help="Local SQLite file (defaults to $LSD_LOCAL_DB_PATH).")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Record counts, per-entity stats and queue stats")

    p = sub.add_parser("queue", help="List entries waiting to be pushed")
    p.add_argument("--entity", choices=sorted(ENTITIES))
    p.add_argument("--entity-id", help="Full operation history of one record instead")
    p.add_argument("--limit", type=int, default=100)

    p = sub.add_parser("retry-failed", help="Re-arm failed queue entries")
    p.add_argument("--id", type=int, help="One entry; all failed entries when omitted")
    p.add_argument("--entity", choices=sorted(ENTITIES))

    p = sub.add_parser("cleanup", help="Delete processed queue entries")
    p.add_argument("--days", type=int, default=settings.processed_retention_days)

    p = sub.add_parser("clear-queue", help="Drop every queued operation, pushed or not")
    p.add_argument("--yes", action="store_true")

    p = sub.add_parser("seed-addresses", help="Bulk-create delivery addresses from a JSON file")
    p.add_argument("file")

    p = sub.add_parser("reset", help="Wipe every local table")
    p.add_argument("--yes", action="store_true")

    args = parser.parse_args()
    handlers = {
        "stats": cmd_stats,
        "queue": cmd_queue,
        "retry-failed": cmd_retry_failed,
        "cleanup": cmd_cleanup,
        "clear-queue": cmd_clear_queue,
        "seed-addresses": cmd_seed_addresses,
        "reset": cmd_reset,
    }
    try:
        return handlers[args.command](LocalDB(args.db), args)
    except SyncError as ex:
        print(ex.message, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
