from datetime import datetime, timedelta, timezone

import pytest

from lsdsync.app import sync_queue as sync_queue_mod
from lsdsync.app.errors import NotFoundError, ValidationError
from lsdsync.app.sync_queue import OperationQueue


def test_enqueue_rejects_unknown_operation_without_writing(local_db):
    q = OperationQueue(local_db)
    q.enqueue("addresses", "CREATE", "a-1", {"department": "Centre"})

    with pytest.raises(ValidationError):
        q.enqueue("addresses", "FOO", "a-1", {})

    assert q.stats()["total"] == 1


def test_enqueue_normalizes_operation_case(local_db):
    q = OperationQueue(local_db)
    entry_id = q.enqueue("addresses", " update ", "a-1", {"commune": "x"})
    assert q.get(entry_id)["operation_type"] == "UPDATE"
    assert q.get(entry_id)["data"] == {"commune": "x"}


def test_dequeue_batch_is_oldest_first_and_skips_processed(local_db):
    q = OperationQueue(local_db)
    first = q.enqueue("addresses", "CREATE", "a-1")
    second = q.enqueue("addresses", "UPDATE", "a-1")
    other = q.enqueue("couriers", "CREATE", "c-1")

    assert [e["id"] for e in q.dequeue_batch()] == [first, second, other]
    assert [e["id"] for e in q.dequeue_batch("addresses")] == [first, second]

    q.mark_processed(first)
    assert [e["id"] for e in q.dequeue_batch("addresses")] == [second]
    assert q.get(first)["processed_at"]


def test_mark_failed_retries_until_max_retries(local_db):
    q = OperationQueue(local_db, max_retries=2)
    entry_id = q.enqueue("addresses", "CREATE", "a-1")

    assert q.mark_failed(entry_id, "timeout") is True
    entry = q.get(entry_id)
    assert entry["status"] == "failed"
    assert entry["retry_count"] == 1
    assert entry["last_error"] == "timeout"
    assert [e["id"] for e in q.dequeue_batch()] == [entry_id]

    assert q.mark_failed(entry_id, "timeout again") is False
    assert q.dequeue_batch() == []
    stats = q.stats()
    assert stats["failed"] == 1
    assert stats["retryable"] == 0


def test_exhausted_entry_blocks_later_entries_for_the_same_record_only(local_db):
    q = OperationQueue(local_db)
    dead = q.enqueue("addresses", "CREATE", "a-1")
    blocked = q.enqueue("addresses", "UPDATE", "a-1")
    free = q.enqueue("addresses", "UPDATE", "a-2")

    assert q.mark_failed(dead, "rejected", retryable=False) is False

    assert [e["id"] for e in q.dequeue_batch()] == [free]
    assert q.get(blocked)["status"] == "pending"


def test_retry_all_failed_rearms_entries(local_db):
    q = OperationQueue(local_db, max_retries=1)
    a = q.enqueue("addresses", "CREATE", "a-1")
    b = q.enqueue("couriers", "CREATE", "c-1")
    q.mark_failed(a, "x")
    q.mark_failed(b, "y")

    assert q.retry_all_failed("addresses") == 1
    assert q.get(a)["status"] == "pending"
    assert q.get(a)["retry_count"] == 0
    assert q.get(b)["status"] == "failed"

    q.retry_failed(b)
    assert q.get(b)["status"] == "pending"
    with pytest.raises(NotFoundError):
        q.retry_failed(b)


def test_cleanup_processed_only_removes_old_processed_entries(local_db, monkeypatch):
    q = OperationQueue(local_db)
    done = q.enqueue("addresses", "CREATE", "a-1")
    waiting = q.enqueue("addresses", "UPDATE", "a-1")
    q.mark_processed(done)

    assert q.cleanup_processed(days_old=7) == 0

    later = datetime.now(timezone.utc) + timedelta(days=8)
    monkeypatch.setattr(sync_queue_mod, "utcnow", lambda: later)
    assert q.cleanup_processed(days_old=7) == 1
    with pytest.raises(NotFoundError):
        q.get(done)
    assert q.get(waiting)["status"] == "pending"


def test_stats_counts_by_status_and_operation(local_db):
    q = OperationQueue(local_db)
    a = q.enqueue("addresses", "CREATE", "a-1")
    q.enqueue("addresses", "UPDATE", "a-1")
    q.enqueue("addresses", "DELETE", "a-2")
    q.mark_processed(a)

    stats = q.stats("addresses")
    assert stats["total"] == 3
    assert stats["pending"] == 2
    assert stats["processed"] == 1
    assert stats["by_operation_type"]["CREATE"] == 1
    assert stats["by_operation_type"]["DELETE"] == 1
    assert stats["by_operation_type"]["ACTIVATE"] == 0
    assert q.stats("couriers")["total"] == 0


def test_outstanding_ids_and_rebase(local_db):
    q = OperationQueue(local_db)
    create = q.enqueue("orders", "CREATE", "o-1", {"version": 0})
    upd1 = q.enqueue("orders", "UPDATE", "o-1", {"client": "a"}, expected_version=0)
    upd2 = q.enqueue("orders", "UPDATE", "o-1", {"client": "b"}, expected_version=0)
    q.mark_processed(create)

    assert q.outstanding_ids("orders") == {"o-1"}
    assert q.has_outstanding("orders", "o-1") is True
    assert q.has_outstanding("orders", "o-2") is False

    q.mark_processed(upd1)
    assert q.rebase_expected_version("orders", "o-1", 0, 1) == 1
    assert q.get(upd2)["expected_version"] == 1


def test_operations_for_entity_returns_full_history(local_db):
    q = OperationQueue(local_db)
    q.enqueue("addresses", "CREATE", "a-1")
    q.enqueue("addresses", "CREATE", "a-2")
    q.enqueue("addresses", "DEACTIVATE", "a-1")

    ops = q.operations_for_entity("a-1")
    assert [e["operation_type"] for e in ops] == ["CREATE", "DEACTIVATE"]
