from __future__ import annotations

import json
from datetime import date
from typing import Any, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from .db import LocalDB
from .entities import EntitySpec
from .errors import NotFoundError, ValidationError
from .geo import haversine_km, point_of
from .metadata import now_iso, parse_ts

# Local bookkeeping columns; never part of the record body sent to the backend.
SYNC_META_FIELDS = ("sync_status", "sync_error", "local_updated_at", "last_synced_at", "distance_km")

# Fields a patch may not change.
_IMMUTABLE_FIELDS = ("id", "created_at", "version")


def _strip_meta(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in SYNC_META_FIELDS}


def _like_pattern(value) -> str:
    """Case-insensitive substring pattern with LIKE wildcards in `value` taken literally."""
    text = str(value).lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{text}%"


def _index_value(v):
    if v is None:
        return None
    if isinstance(v, bool):
        return "1" if v else "0"
    return str(v)


class LocalStore:
    """
    Durable, queryable mirror of one remote entity table.

    Records are stored as their validated JSON body plus a few mirrored columns
    (declared index fields, `is_active`, timestamps) and the local sync bookkeeping.
    Every method accepts an optional `cur` so callers can group writes in one transaction.
    """

    def __init__(self, db: LocalDB, spec: EntitySpec):
        self.db = db
        self.spec = spec
        self.table = spec.name

    # -- helpers ---------------------------------------------------------

    def validate(self, data: dict[str, Any]) -> dict[str, Any]:
        try:
            model = self.spec.schema.model_validate(_strip_meta(data))
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid {self.spec.name} record",
                {"errors": json.loads(e.json(include_url=False))},
            ) from e
        return model.model_dump(mode="json")

    def _row_to_record(self, row) -> dict[str, Any]:
        rec = json.loads(row["data_json"])
        rec["sync_status"] = row["sync_status"]
        rec["sync_error"] = row["sync_error"]
        rec["local_updated_at"] = row["local_updated_at"]
        rec["last_synced_at"] = row["last_synced_at"]
        return rec

    def _write(
        self,
        cur,
        record: dict[str, Any],
        *,
        sync_status: str,
        local_updated_at: str,
        last_synced_at: Optional[str] = None,
        sync_error: Optional[str] = None,
    ) -> None:
        cols = ["id", "data_json", "is_active", "sync_status", "sync_error", "created_at", "updated_at", "local_updated_at", "last_synced_at"]
        vals = [
            record["id"],
            json.dumps(record, default=str),
            0 if record.get("is_active") is False else 1,
            sync_status,
            sync_error,
            record.get("created_at"),
            record.get("updated_at"),
            local_updated_at,
            last_synced_at,
        ]
        for f in self.spec.index_fields:
            cols.append(f)
            vals.append(_index_value(record.get(f)))
        updates = ",\n                  ".join(f"{c}=excluded.{c}" for c in cols if c != "id")
        cur.execute(
            f"""
            INSERT INTO {self.table} ({", ".join(cols)})
            VALUES ({", ".join(["?"] * len(cols))})
            ON CONFLICT(id) DO UPDATE SET
                  {updates}
            """,
            tuple(vals),
        )

    # -- reads -----------------------------------------------------------

    def find(self, record_id: str, cur=None) -> Optional[dict[str, Any]]:
        with self.db.read(cur) as c:
            c.execute(f"SELECT * FROM {self.table} WHERE id = ?", (str(record_id),))
            row = c.fetchone()
            return self._row_to_record(row) if row else None

    def get_by_id(self, record_id: str, cur=None) -> dict[str, Any]:
        rec = self.find(record_id, cur=cur)
        if rec is None:
            raise NotFoundError(f"{self.spec.name} {record_id} not found")
        return rec

    def get_all(self, include_inactive: bool = False, cur=None, **filters) -> list[dict[str, Any]]:
        """Full scan, most recently touched first. Keyword filters are case-insensitive substring matches on index fields."""
        where = []
        params: list[Any] = []
        if not include_inactive:
            where.append("is_active = 1")
        for field, value in filters.items():
            if value in (None, ""):
                continue
            if field not in self.spec.index_fields:
                raise ValidationError(f"cannot filter {self.spec.name} by {field}")
            where.append(f"LOWER({field}) LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(value))
        sql = f"SELECT * FROM {self.table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY local_updated_at DESC, id"
        with self.db.read(cur) as c:
            c.execute(sql, tuple(params))
            return [self._row_to_record(r) for r in c.fetchall()]

    def ids(self, sync_status: Optional[str] = None, cur=None) -> set[str]:
        with self.db.read(cur) as c:
            if sync_status:
                c.execute(f"SELECT id FROM {self.table} WHERE sync_status = ?", (sync_status,))
            else:
                c.execute(f"SELECT id FROM {self.table}")
            return {r["id"] for r in c.fetchall()}

    def search_by_field(self, field: str, value, include_inactive: bool = False) -> list[dict[str, Any]]:
        if field not in self.spec.index_fields:
            raise ValidationError(f"{field} is not an indexed field of {self.spec.name}")
        sql = f"SELECT * FROM {self.table} WHERE {field} = ?"
        if not include_inactive:
            sql += " AND is_active = 1"
        with self.db.read() as c:
            c.execute(sql, (_index_value(value),))
            return [self._row_to_record(r) for r in c.fetchall()]

    def search_by_proximity(
        self,
        lat: float,
        lng: float,
        radius_km: float = 5,
        include_inactive: bool = False,
    ) -> list[dict[str, Any]]:
        if not self.spec.location_field:
            raise ValidationError(f"{self.spec.name} records have no location")
        if radius_km is None or radius_km < 0:
            raise ValidationError("radius_km must be >= 0")
        nearby = []
        for rec in self.get_all(include_inactive=include_inactive):
            pt = point_of(rec.get(self.spec.location_field))
            if pt is None:
                continue
            distance = haversine_km(float(lat), float(lng), pt[0], pt[1])
            if distance <= radius_km:
                nearby.append({**rec, "distance_km": distance})
        nearby.sort(key=lambda r: r["distance_km"])
        return nearby

    def search(self, term: str, include_inactive: bool = False) -> list[dict[str, Any]]:
        """Case-insensitive substring match of `term` against any of the entity's search fields, newest first."""
        if not self.spec.search_fields:
            raise ValidationError(f"{self.spec.name} records cannot be searched by text")
        term = str(term or "").strip()
        if not term:
            raise ValidationError("search term is required")
        any_field = " OR ".join(f"LOWER({f}) LIKE ? ESCAPE '\\'" for f in self.spec.search_fields)
        sql = f"SELECT * FROM {self.table} WHERE ({any_field})"
        if not include_inactive:
            sql += " AND is_active = 1"
        sql += " ORDER BY created_at DESC, id"
        params = [_like_pattern(term)] * len(self.spec.search_fields)
        with self.db.read() as c:
            c.execute(sql, tuple(params))
            return [self._row_to_record(r) for r in c.fetchall()]

    def distinct_values(self, field: str, include_inactive: bool = False, **equals) -> list[str]:
        """Sorted non-empty values of an index field, optionally narrowed by exact matches on other index fields."""
        for f in (field, *equals):
            if f not in self.spec.index_fields:
                raise ValidationError(f"{f} is not an indexed field of {self.spec.name}")
        where = [f"{field} IS NOT NULL", f"{field} != ''"]
        params: list[Any] = []
        if not include_inactive:
            where.append("is_active = 1")
        for f, value in equals.items():
            if value in (None, ""):
                continue
            where.append(f"{f} = ?")
            params.append(_index_value(value))
        sql = f"SELECT DISTINCT {field} AS v FROM {self.table} WHERE {' AND '.join(where)} ORDER BY {field}"
        with self.db.read() as c:
            c.execute(sql, tuple(params))
            return [r["v"] for r in c.fetchall()]

    def first_match(self, include_inactive: bool = True, **equals) -> Optional[dict[str, Any]]:
        """Oldest record whose index fields equal every given value exactly."""
        where = []
        params: list[Any] = []
        for f, value in equals.items():
            if f not in self.spec.index_fields:
                raise ValidationError(f"{f} is not an indexed field of {self.spec.name}")
            where.append(f"COALESCE({f}, '') = ?")
            params.append(_index_value(value) or "")
        if not include_inactive:
            where.append("is_active = 1")
        sql = f"SELECT * FROM {self.table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at, id LIMIT 1"
        with self.db.read() as c:
            c.execute(sql, tuple(params))
            row = c.fetchone()
            return self._row_to_record(row) if row else None

    def grouped_by(self, field: str, include_inactive: bool = False) -> dict[str, list[dict[str, Any]]]:
        groups: dict[str, list[dict[str, Any]]] = {}
        records = sorted(self.get_all(include_inactive=include_inactive), key=lambda r: (r.get(field) or "", r["id"]))
        for r in records:
            groups.setdefault(r.get(field) or "unspecified", []).append(r)
        return groups

    def stats(self) -> dict[str, Any]:
        records = self.get_all(include_inactive=True)
        active = [r for r in records if r.get("is_active") is not False]
        out: dict[str, Any] = {
            "total": len(records),
            "active": len(active),
            "inactive": len(records) - len(active),
            "pending_sync": sum(1 for r in records if r["sync_status"] == "pending"),
            "synced": sum(1 for r in records if r["sync_status"] == "synced"),
            "sync_errors": sum(1 for r in records if r["sync_status"] == "error"),
        }
        if self.spec.category_field:
            by_category: dict[str, int] = {}
            for r in active:
                key = r.get(self.spec.category_field) or "unspecified"
                by_category[key] = by_category.get(key, 0) + 1
            out["by_category"] = by_category
        if self.spec.location_field:
            with_location = sum(1 for r in records if point_of(r.get(self.spec.location_field)) is not None)
            out["with_location"] = with_location
            out["without_location"] = len(records) - with_location
        return out

    # -- local (optimistic) writes ----------------------------------------

    def add(self, data: dict[str, Any], cur=None) -> dict[str, Any]:
        now = now_iso()
        record = self.validate({**data, "created_at": data.get("created_at") or now, "updated_at": now})
        with self.db.transaction(cur) as c:
            c.execute(f"SELECT 1 FROM {self.table} WHERE id = ?", (record["id"],))
            if c.fetchone():
                raise ValidationError(f"{self.spec.name} {record['id']} already exists")
            self._write(c, record, sync_status="pending", local_updated_at=now)
            return self._row_to_record_from(record, "pending", now)

    def update(self, record_id: str, patch: dict[str, Any], cur=None) -> tuple[dict[str, Any], dict[str, Any]]:
        """Merge `patch` into the record. Returns (record, diff) where diff is what changed, for the queue."""
        if "id" in patch and str(patch["id"]) != str(record_id):
            raise ValidationError("id is immutable")
        clean = {k: v for k, v in _strip_meta(patch).items() if k not in _IMMUTABLE_FIELDS}
        with self.db.transaction(cur) as c:
            existing = self.get_by_id(record_id, cur=c)
            now = now_iso()
            record = self.validate({**_strip_meta(existing), **clean, "updated_at": now})
            self._write(c, record, sync_status="pending", local_updated_at=now)
            diff = {k: record.get(k) for k in clean}
            diff["updated_at"] = record["updated_at"]
            return self._row_to_record_from(record, "pending", now), diff

    def deactivate(self, record_id: str, cur=None) -> tuple[dict[str, Any], dict[str, Any]]:
        if not self.spec.soft_delete:
            raise ValidationError(f"{self.spec.name} do not support deactivation")
        return self.update(record_id, {"is_active": False, "deactivated_at": now_iso()}, cur=cur)

    def activate(self, record_id: str, cur=None) -> tuple[dict[str, Any], dict[str, Any]]:
        if not self.spec.soft_delete:
            raise ValidationError(f"{self.spec.name} do not support activation")
        return self.update(record_id, {"is_active": True, "deactivated_at": None}, cur=cur)

    def hard_delete(self, record_id: str, cur=None) -> bool:
        """Permanent removal. Idempotent: returns False when nothing was there."""
        with self.db.transaction(cur) as c:
            c.execute(f"DELETE FROM {self.table} WHERE id = ?", (str(record_id),))
            return c.rowcount > 0

    def _row_to_record_from(self, record: dict[str, Any], sync_status: str, local_updated_at: str) -> dict[str, Any]:
        return {**record, "sync_status": sync_status, "sync_error": None, "local_updated_at": local_updated_at, "last_synced_at": None}

    # -- sync bookkeeping --------------------------------------------------

    def set_version(self, record_id: str, version: int, cur=None) -> None:
        if not self.spec.versioned:
            return
        with self.db.transaction(cur) as c:
            c.execute(f"SELECT data_json FROM {self.table} WHERE id = ?", (str(record_id),))
            row = c.fetchone()
            if row:
                body = json.loads(row["data_json"])
                body["version"] = int(version)
                c.execute(f"UPDATE {self.table} SET data_json = ? WHERE id = ?", (json.dumps(body, default=str), str(record_id)))

    def mark_synced(self, record_id: str, version: Optional[int] = None, cur=None) -> None:
        with self.db.transaction(cur) as c:
            if version is not None:
                self.set_version(record_id, version, cur=c)
            c.execute(
                f"UPDATE {self.table} SET sync_status = 'synced', sync_error = NULL, last_synced_at = ? WHERE id = ?",
                (now_iso(), str(record_id)),
            )

    def mark_sync_error(self, record_id: str, message: str, cur=None) -> None:
        with self.db.transaction(cur) as c:
            c.execute(
                f"UPDATE {self.table} SET sync_status = 'error', sync_error = ? WHERE id = ?",
                (message, str(record_id)),
            )

    def mark_pending(self, record_id: str, cur=None) -> None:
        with self.db.transaction(cur) as c:
            c.execute(
                f"UPDATE {self.table} SET sync_status = 'pending', sync_error = NULL WHERE id = ?",
                (str(record_id),),
            )

    def upsert_remote(self, data: dict[str, Any], cur=None) -> dict[str, Any]:
        """Insert-or-overwrite with the backend's copy. Remote fields win; the record becomes synced."""
        record = self.validate(data)
        now = now_iso()
        local_updated_at = record.get("updated_at") or now
        with self.db.transaction(cur) as c:
            self._write(c, record, sync_status="synced", local_updated_at=local_updated_at, last_synced_at=now)
        return {**record, "sync_status": "synced", "sync_error": None, "local_updated_at": local_updated_at, "last_synced_at": now}

    def prune(self, record_ids: Iterable[str], cur=None) -> int:
        ids = [str(i) for i in record_ids]
        if not ids:
            return 0
        with self.db.transaction(cur) as c:
            c.execute(f"DELETE FROM {self.table} WHERE id IN ({','.join(['?'] * len(ids))})", tuple(ids))
            return c.rowcount

    def clean_cache(self, keep_date: Optional[date] = None, exclude_ids: Iterable[str] = ()) -> int:
        """Drop synced records not created on `keep_date` (local calendar day, default today)."""
        keep_date = keep_date or date.today()
        keep = {str(i) for i in exclude_ids}
        stale = []
        for rec in self.get_all(include_inactive=True):
            if rec["id"] in keep or rec["sync_status"] != "synced":
                continue
            created = parse_ts(rec.get("created_at"))
            if created is None or created.astimezone().date() != keep_date:
                stale.append(rec["id"])
        return self.prune(stale)
