import time
from datetime import datetime, timedelta, timezone

import pytest

from lsdsync.app import local_store as local_store_mod
from lsdsync.app.entities import ADDRESSES, ORDERS
from lsdsync.app.errors import NotFoundError, ValidationError
from lsdsync.app.local_store import LocalStore
from lsdsync.app.schemas import new_id


def _addresses(local_db):
    return LocalStore(local_db, ADDRESSES)


def test_add_is_readable_immediately_and_pending(local_db):
    store = _addresses(local_db)
    rec = store.add({"department": "Littoral", "commune": "Douala 1"})

    assert rec["sync_status"] == "pending"
    assert rec["created_at"] and rec["updated_at"]
    ids = [r["id"] for r in store.get_all()]
    assert ids == [rec["id"]]
    assert store.get_by_id(rec["id"])["commune"] == "Douala 1"


def test_add_rejects_duplicate_id(local_db):
    store = _addresses(local_db)
    rid = new_id()
    store.add({"id": rid, "department": "Centre"})
    with pytest.raises(ValidationError):
        store.add({"id": rid, "department": "Littoral"})


def test_update_merges_and_keeps_identity(local_db):
    store = _addresses(local_db)
    rec = store.add({"department": "Centre", "commune": "Yaounde 2"})

    updated, diff = store.update(rec["id"], {"commune": "Yaounde 3", "created_at": "2000-01-01T00:00:00+00:00"})

    assert updated["id"] == rec["id"]
    assert updated["department"] == "Centre"
    assert updated["commune"] == "Yaounde 3"
    assert updated["created_at"] == rec["created_at"]
    assert set(diff) == {"commune", "updated_at"}


def test_update_cannot_change_id(local_db):
    store = _addresses(local_db)
    rec = store.add({"department": "Centre"})
    with pytest.raises(ValidationError):
        store.update(rec["id"], {"id": new_id()})


def test_update_missing_record_raises_not_found(local_db):
    with pytest.raises(NotFoundError):
        _addresses(local_db).update(new_id(), {"commune": "x"})


def test_get_all_filters_are_case_insensitive_substrings(local_db):
    store = _addresses(local_db)
    store.add({"department": "Littoral", "commune": "Douala 1"})
    store.add({"department": "Centre", "commune": "Yaounde 1"})

    assert [r["department"] for r in store.get_all(department="LITT")] == ["Littoral"]
    assert len(store.get_all(commune="1")) == 2
    with pytest.raises(ValidationError):
        store.get_all(label="x")


def test_get_all_sorts_most_recently_touched_first(local_db, monkeypatch):
    store = _addresses(local_db)
    stamps = iter(["2024-01-01T10:00:00+00:00", "2024-01-01T11:00:00+00:00", "2024-01-01T12:00:00+00:00"])
    monkeypatch.setattr(local_store_mod, "now_iso", lambda: next(stamps))

    a = store.add({"department": "A"})
    b = store.add({"department": "B"})
    store.update(a["id"], {"commune": "touched"})

    assert [r["id"] for r in store.get_all()] == [a["id"], b["id"]]


def test_deactivate_hides_record_until_activated(local_db):
    store = _addresses(local_db)
    rec = store.add({"department": "Ouest"})

    deactivated, diff = store.deactivate(rec["id"])
    assert deactivated["is_active"] is False
    assert deactivated["deactivated_at"]
    assert diff["is_active"] is False
    assert store.get_all() == []
    assert [r["id"] for r in store.get_all(include_inactive=True)] == [rec["id"]]

    store.activate(rec["id"])
    assert [r["id"] for r in store.get_all()] == [rec["id"]]
    assert store.get_by_id(rec["id"])["deactivated_at"] is None


def test_orders_do_not_support_soft_delete(local_db):
    store = LocalStore(local_db, ORDERS)
    rec = store.add({"client": "Awa"})
    with pytest.raises(ValidationError):
        store.deactivate(rec["id"])


def test_hard_delete_is_idempotent(local_db):
    store = _addresses(local_db)
    rec = store.add({"department": "Nord"})
    assert store.hard_delete(rec["id"]) is True
    assert store.hard_delete(rec["id"]) is False
    assert store.find(rec["id"]) is None


def test_search_by_field_exact_match_on_active_records(local_db):
    store = _addresses(local_db)
    keep = store.add({"department": "Littoral"})
    gone = store.add({"department": "Littoral"})
    store.add({"department": "Littoral-Sud"})
    store.deactivate(gone["id"])

    assert [r["id"] for r in store.search_by_field("department", "Littoral")] == [keep["id"]]
    with pytest.raises(ValidationError):
        store.search_by_field("label", "x")


def test_search_by_proximity_returns_points_within_radius_nearest_first(local_db):
    store = _addresses(local_db)
    near = store.add({"department": "A", "location": {"lat": 0, "lng": 0.01}})
    origin = store.add({"department": "B", "location": {"lat": 0, "lng": 0}})
    store.add({"department": "C", "location": {"lat": 10, "lng": 10}})
    store.add({"department": "D"})

    found = store.search_by_proximity(0, 0, radius_km=5)

    assert [r["id"] for r in found] == [origin["id"], near["id"]]
    assert found[0]["distance_km"] == 0
    assert 1.0 < found[1]["distance_km"] < 1.2


def test_stats_counts_categories_and_locations(local_db):
    store = _addresses(local_db)
    store.add({"department": "Littoral", "location": {"lat": 4.05, "lng": 9.7}})
    store.add({"department": "Littoral"})
    off = store.add({"department": "Centre"})
    store.deactivate(off["id"])

    stats = store.stats()

    assert stats["total"] == 3
    assert stats["active"] == 2
    assert stats["inactive"] == 1
    assert stats["pending_sync"] == 3
    assert stats["by_category"] == {"Littoral": 2}
    assert stats["with_location"] == 1
    assert stats["without_location"] == 2


def test_upsert_remote_twice_leaves_the_same_state(local_db, monkeypatch):
    monkeypatch.setattr(local_store_mod, "now_iso", lambda: "2024-05-01T08:00:00+00:00")
    store = _addresses(local_db)
    remote_row = {"id": new_id(), "department": "Est", "updated_at": "2024-04-30T08:00:00+00:00"}

    store.upsert_remote(remote_row)
    once = store.get_all(include_inactive=True)
    store.upsert_remote(remote_row)
    twice = store.get_all(include_inactive=True)

    assert once == twice
    assert twice[0]["sync_status"] == "synced"


def test_mark_synced_records_server_version_for_orders(local_db):
    store = LocalStore(local_db, ORDERS)
    rec = store.add({"client": "Awa"})
    store.mark_synced(rec["id"], version=4)

    got = store.get_by_id(rec["id"])
    assert got["version"] == 4
    assert got["sync_status"] == "synced"
    assert got["last_synced_at"]


def test_mark_sync_error_keeps_record_queryable(local_db):
    store = _addresses(local_db)
    rec = store.add({"department": "Sud"})
    store.mark_sync_error(rec["id"], "rejected")

    got = store.get_by_id(rec["id"])
    assert got["sync_status"] == "error"
    assert got["sync_error"] == "rejected"
    assert store.stats()["sync_errors"] == 1


def test_clean_cache_keeps_todays_and_unsynced_orders(local_db):
    store = LocalStore(local_db, ORDERS)
    now = datetime.now(timezone.utc)
    old = (now - timedelta(days=2)).isoformat()
    today = store.upsert_remote({"id": new_id(), "created_at": now.isoformat()})
    stale = store.upsert_remote({"id": new_id(), "created_at": old})
    unsynced = store.add({"created_at": old})
    excluded = store.upsert_remote({"id": new_id(), "created_at": old})

    removed = store.clean_cache(exclude_ids=[excluded["id"]])

    assert removed == 1
    left = {r["id"] for r in store.get_all()}
    assert left == {today["id"], unsynced["id"], excluded["id"]}
    assert stale["id"] not in left


def test_get_all_filters_take_like_wildcards_literally(local_db):
    store = _addresses(local_db)
    store.add({"department": "Littoral", "commune": "Douala_5"})
    store.add({"department": "Littoral", "commune": "Douala 50%"})
    store.add({"department": "Littoral", "commune": "Doualax5"})

    assert [r["commune"] for r in store.get_all(commune="a_5")] == ["Douala_5"]
    assert [r["commune"] for r in store.get_all(commune="50%")] == ["Douala 50%"]
    assert [r["commune"] for r in store.search("%")] == ["Douala 50%"]


def test_search_matches_any_hierarchy_field(local_db):
    store = _addresses(local_db)
    akwa = store.add({"department": "Littoral", "commune": "Douala 1", "neighborhood": "Akwa"})
    bastos = store.add({"department": "Centre", "commune": "Yaounde 1", "neighborhood": "Bastos"})
    hidden = store.add({"department": "Centre", "district": "Akwa Nord"})
    store.deactivate(hidden["id"])

    assert [r["id"] for r in store.search("akwa")] == [akwa["id"]]
    assert {r["id"] for r in store.search("AKWA", include_inactive=True)} == {akwa["id"], hidden["id"]}
    assert {r["id"] for r in store.search(" 1 ")} == {akwa["id"], bastos["id"]}
    with pytest.raises(ValidationError):
        store.search("  ")
    with pytest.raises(ValidationError):
        LocalStore(local_db, ORDERS).search("awa")


def test_distinct_values_cascade_down_the_hierarchy(local_db):
    store = _addresses(local_db)
    store.add({"department": "Littoral", "commune": "Douala 1", "district": "Akwa", "neighborhood": "Akwa Nord"})
    store.add({"department": "Littoral", "commune": "Douala 5", "district": "Kotto", "neighborhood": "Cite SIC"})
    store.add({"department": "Centre", "commune": "Yaounde 1", "district": "Bastos"})
    store.add({"department": "Littoral"})
    closed = store.add({"department": "Ouest", "commune": "Bafoussam"})
    store.deactivate(closed["id"])

    assert store.distinct_values("department") == ["Centre", "Littoral"]
    assert store.distinct_values("department", include_inactive=True) == ["Centre", "Littoral", "Ouest"]
    assert store.distinct_values("commune", department="Littoral") == ["Douala 1", "Douala 5"]
    assert store.distinct_values("district", commune="Douala 5") == ["Kotto"]
    assert store.distinct_values("neighborhood", district=None) == ["Akwa Nord", "Cite SIC"]
    with pytest.raises(ValidationError):
        store.distinct_values("label")


def test_first_match_requires_every_field_to_match_exactly(local_db):
    store = _addresses(local_db)
    first = store.add({"department": "Littoral", "commune": "Douala 1"})
    store.add({"department": "Littoral", "commune": "Douala 1", "district": "Akwa"})

    assert store.first_match(department="Littoral", commune="Douala 1", district="", neighborhood="")["id"] == first["id"]
    assert store.first_match(department="littoral", commune="Douala 1", district="", neighborhood="") is None

    store.deactivate(first["id"])
    assert store.first_match(department="Littoral", commune="Douala 1", district="", neighborhood="")["id"] == first["id"]
    assert store.first_match(include_inactive=False, department="Littoral", commune="Douala 1", district="", neighborhood="") is None


def test_grouped_by_puts_blank_values_under_unspecified(local_db):
    store = _addresses(local_db)
    a = store.add({"department": "Littoral", "commune": "Douala 1"})
    b = store.add({"department": "Centre"})
    c = store.add({"commune": "Nowhere"})

    groups = store.grouped_by("department")

    assert list(groups) == ["unspecified", "Centre", "Littoral"]
    assert [r["id"] for r in groups["Littoral"]] == [a["id"]]
    assert [r["id"] for r in groups["Centre"]] == [b["id"]]
    assert [r["id"] for r in groups["unspecified"]] == [c["id"]]


def test_reads_do_not_wait_for_a_writer(local_db):
    store = _addresses(local_db)
    rec = store.add({"department": "Littoral"})
    writer = local_db.connect()
    writer.execute("BEGIN IMMEDIATE")
    try:
        writer.execute("UPDATE addresses SET department = 'Centre' WHERE id = ?", (rec["id"],))
        started = time.monotonic()
        assert [r["department"] for r in store.get_all()] == ["Littoral"]
        assert store.get_by_id(rec["id"])["id"] == rec["id"]
        assert time.monotonic() - started < 2
    finally:
        writer.rollback()
        writer.close()
