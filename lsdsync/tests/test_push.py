import asyncio

from lsdsync.app.errors import RemoteError


def _push(engine, name="addresses"):
    return engine.orchestrator.sessions[name].push


def test_partial_failure_is_isolated(engine, remote):
    a = engine.addresses.create({"department": "A"})["data"]
    b = engine.addresses.create({"department": "B"})["data"]
    c = engine.addresses.create({"department": "C"})["data"]
    remote.failures[b["id"]] = RemoteError("rejected by server")

    res = asyncio.run(_push(engine).push())

    assert res["success"] is True
    assert res["processed"] == 2
    assert res["failed"] == 1
    statuses = [e["status"] for e in engine.queue.operations_for_entity(a["id"]) + engine.queue.operations_for_entity(b["id"]) + engine.queue.operations_for_entity(c["id"])]
    assert statuses == ["processed", "failed", "processed"]
    assert set(remote.tables["addresses"]) == {a["id"], c["id"]}

    local = {r["id"]: r for r in engine.addresses.get_all()["data"]}
    assert local[a["id"]]["sync_status"] == "synced"
    assert local[b["id"]]["sync_status"] == "error"
    assert local[b["id"]]["sync_error"] == "rejected by server"
    assert local[c["id"]]["sync_status"] == "synced"


def test_same_record_operations_reach_remote_in_order(engine, remote):
    rec = engine.addresses.create({"department": "A"})["data"]
    engine.addresses.update(rec["id"], {"commune": "B"})
    engine.addresses.deactivate(rec["id"])
    engine.addresses.delete(rec["id"])

    res = asyncio.run(_push(engine).push())

    assert res["processed"] == 4
    assert remote.ops_for(rec["id"]) == ["insert", "update", "update", "delete"]
    assert rec["id"] not in remote.tables["addresses"]


def test_failed_entry_holds_back_later_entries_for_the_same_record(engine, remote):
    rec = engine.addresses.create({"department": "A"})["data"]
    engine.addresses.update(rec["id"], {"commune": "B"})
    other = engine.addresses.create({"department": "Other"})["data"]
    remote.failures[("insert", rec["id"])] = RemoteError("timeout")

    res = asyncio.run(_push(engine).push())

    assert (res["processed"], res["failed"], res["skipped"]) == (1, 1, 1)
    assert remote.ops_for(rec["id"]) == ["insert"]
    assert other["id"] in remote.tables["addresses"]
    create, update = engine.queue.operations_for_entity(rec["id"])
    assert create["status"] == "failed"
    assert create["retry_count"] == 1
    assert update["status"] == "pending"

    remote.failures.clear()
    res = asyncio.run(_push(engine).push())

    assert (res["processed"], res["failed"]) == (2, 0)
    assert remote.tables["addresses"][rec["id"]]["commune"] == "B"
    assert engine.addresses.get(rec["id"])["data"]["sync_status"] == "synced"


def test_push_while_offline_changes_nothing(engine, remote, connectivity):
    engine.addresses.create({"department": "A"})
    asyncio.run(connectivity.set_online(False))

    res = asyncio.run(_push(engine).push())

    assert res == {"success": False, "error": "offline", "code": "offline"}
    assert remote.calls == []
    assert engine.queue.stats()["pending"] == 1


def test_second_push_while_one_is_in_flight_returns_immediately(engine, remote):
    engine.addresses.create({"department": "A"})
    push = _push(engine)

    async def main():
        remote.gate = asyncio.Event()
        first_task = asyncio.create_task(push.push())
        await asyncio.sleep(0)
        assert push.in_flight is True
        second = await push.push()
        remote.gate.set()
        first = await first_task
        return first, second

    first, second = asyncio.run(main())

    assert second == {"success": False, "error": "push already in progress", "code": "busy"}
    assert first["processed"] == 1
    assert push.in_flight is False


def test_push_stamps_last_push(engine):
    assert engine.metadata.last_push("addresses") is None
    engine.addresses.create({"department": "A"})

    res = asyncio.run(_push(engine).push())

    assert res["last_push"]
    assert engine.metadata.last_push("addresses") is not None


def test_remote_conflict_is_not_retried(engine, remote):
    order = engine.orders.create({"client": "Awa"})["data"]
    asyncio.run(_push(engine, "orders").push())
    # Another terminal edited the order in the meantime.
    remote.tables["orders"][order["id"]]["version"] = 5

    engine.orders.update(order["id"], {"client": "Awa N."})
    res = asyncio.run(_push(engine, "orders").push())

    assert res["failed"] == 1
    stats = engine.queue.stats("orders")
    assert stats["failed"] == 1
    assert stats["retryable"] == 0
    local = engine.orders.get(order["id"])["data"]
    assert local["sync_status"] == "error"
    assert local["sync_error"].startswith("conflict")
    assert asyncio.run(_push(engine, "orders").push())["processed"] == 0


def test_queued_order_edits_follow_the_server_version(engine, remote):
    order = engine.orders.create({"client": "Awa"})["data"]
    engine.orders.update(order["id"], {"client": "Awa N."})
    engine.orders.update(order["id"], {"delivery_instructions": "ring twice"})

    res = asyncio.run(_push(engine, "orders").push())

    assert (res["processed"], res["failed"]) == (3, 0)
    server = remote.tables["orders"][order["id"]]
    assert server["version"] == 2
    assert server["client"] == "Awa N."
    local = engine.orders.get(order["id"])["data"]
    assert local["version"] == 2
    assert local["sync_status"] == "synced"


def _conflicted_order(engine, remote, *edits):
    """An order whose first queued edit was rejected because another terminal changed it (now at version 5)."""
    order = engine.orders.create({"client": "Awa"})["data"]
    asyncio.run(_push(engine, "orders").push())
    remote.tables["orders"][order["id"]].update({"version": 5, "client": "Remote"})
    for patch in edits:
        engine.orders.update(order["id"], patch)
    asyncio.run(_push(engine, "orders").push())
    (failed,) = engine.queue.failed_entries("orders")
    return order, failed


def test_resolving_a_conflict_with_the_remote_copy(engine, remote):
    order, failed = _conflicted_order(engine, remote, {"client": "Awa N."}, {"delivery_instructions": "ring twice"})

    res = asyncio.run(engine.resolve_conflict(failed["id"], keep="remote"))

    assert res["success"] is True
    assert res["data"] == {"kept": "remote", "entity_id": order["id"], "dropped": 2}
    assert engine.queue.has_outstanding("orders", order["id"]) is False
    local = engine.orders.get(order["id"])["data"]
    assert local["client"] == "Remote"
    assert local["version"] == 5
    assert local["sync_status"] == "synced"
    assert asyncio.run(_push(engine, "orders").push())["processed"] == 0


def test_resolving_a_conflict_with_the_local_edits(engine, remote):
    order, failed = _conflicted_order(engine, remote, {"client": "Awa N."}, {"delivery_instructions": "ring twice"})

    res = asyncio.run(engine.resolve_conflict(failed["id"], keep="local"))

    assert res["data"]["rebased"] == 2
    assert res["data"]["remote_version"] == 5
    assert engine.orders.get(order["id"])["data"]["sync_status"] == "pending"
    assert engine.queue.get(failed["id"])["status"] == "pending"

    res = asyncio.run(_push(engine, "orders").push())

    assert (res["processed"], res["failed"]) == (2, 0)
    server = remote.tables["orders"][order["id"]]
    assert server["version"] == 7
    assert server["client"] == "Awa N."
    assert server["delivery_instructions"] == "ring twice"
    local = engine.orders.get(order["id"])["data"]
    assert local["version"] == 7
    assert local["sync_status"] == "synced"


def test_resolve_conflict_rejects_bad_requests(engine, remote, connectivity):
    order, failed = _conflicted_order(engine, remote, {"client": "Awa N."})
    pending = engine.couriers.create({"name": "Paul"})["data"]
    (pending_entry,) = engine.queue.operations_for_entity(pending["id"])

    assert asyncio.run(engine.resolve_conflict(pending_entry["id"], keep="remote"))["code"] == "validation"
    assert asyncio.run(engine.resolve_conflict(failed["id"], keep="both"))["code"] == "validation"
    assert asyncio.run(engine.resolve_conflict(10_000, keep="remote"))["code"] == "not_found"

    asyncio.run(connectivity.set_online(False))
    assert asyncio.run(engine.resolve_conflict(failed["id"], keep="remote"))["code"] == "offline"
    assert engine.queue.get(failed["id"])["status"] == "failed"
    assert remote.tables["orders"][order["id"]]["client"] == "Remote"
