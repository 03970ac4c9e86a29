from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

from .address_io import HIERARCHY_FIELDS, addresses_to_csv, addresses_to_json, flatten_address_groups
from .connectivity import Connectivity
from .db import LocalDB
from .entities import ENTITIES, EntitySpec
from .errors import ClosedError, SyncError, ValidationError, error_result
from .jsonlog import json_log
from .local_store import LocalStore, _strip_meta
from .metadata import SyncMetadata
from .orchestrator import EntitySession, SyncOrchestrator
from .pull import PullEngine
from .push import PushEngine
from .realtime import RealtimeListener
from .reconcile import RemoteChangeApplier
from .schemas import Order, Promotion, apply_promotion, order_total
from .sync_queue import OperationQueue


def _call(op: str, fn: Callable[[], Any]) -> dict[str, Any]:
    try:
        return {"success": True, "data": fn()}
    except SyncError as ex:
        return error_result(ex)
    except Exception as ex:
        json_log("error", "engine.unexpected_error", op=op, error=str(ex))
        return error_result(ex)


class EntityService:
    """
    UI-facing operations for one entity. Every mutation updates the local store and
    enqueues the matching operation in one SQLite transaction, so the two never disagree.
    """

    def __init__(self, spec: EntitySpec, store: LocalStore, queue: OperationQueue):
        self.spec = spec
        self.store = store
        self.queue = queue

    @property
    def name(self) -> str:
        return self.spec.name

    def _check_editable(self, existing: dict[str, Any]) -> None:
        pass

    # -- mutations ---------------------------------------------------------

    def create(self, data: dict[str, Any]) -> dict[str, Any]:
        def _do():
            if not isinstance(data, dict):
                raise ValidationError("record must be an object")
            with self.store.db.transaction() as cur:
                rec = self.store.add(data, cur=cur)
                self.queue.enqueue(self.name, "CREATE", rec["id"], _strip_meta(rec), cur=cur)
            return rec

        return _call(f"{self.name}.create", _do)

    def update(self, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        def _do():
            if not isinstance(patch, dict):
                raise ValidationError("patch must be an object")
            with self.store.db.transaction() as cur:
                existing = self.store.get_by_id(record_id, cur=cur)
                self._check_editable(existing)
                rec, diff = self.store.update(record_id, patch, cur=cur)
                expected = int(existing.get("version") or 0) if self.spec.versioned else None
                self.queue.enqueue(self.name, "UPDATE", rec["id"], diff, expected_version=expected, cur=cur)
            return rec

        return _call(f"{self.name}.update", _do)

    def deactivate(self, record_id: str) -> dict[str, Any]:
        def _do():
            with self.store.db.transaction() as cur:
                rec, diff = self.store.deactivate(record_id, cur=cur)
                self.queue.enqueue(self.name, "DEACTIVATE", rec["id"], diff, cur=cur)
            return rec

        return _call(f"{self.name}.deactivate", _do)

    def activate(self, record_id: str) -> dict[str, Any]:
        def _do():
            with self.store.db.transaction() as cur:
                rec, diff = self.store.activate(record_id, cur=cur)
                self.queue.enqueue(self.name, "ACTIVATE", rec["id"], diff, cur=cur)
            return rec

        return _call(f"{self.name}.activate", _do)

    def delete(self, record_id: str) -> dict[str, Any]:
        def _do():
            with self.store.db.transaction() as cur:
                rec = self.store.get_by_id(record_id, cur=cur)
                self.store.hard_delete(rec["id"], cur=cur)
                self.queue.enqueue(self.name, "DELETE", rec["id"], {}, cur=cur)
            return {"id": rec["id"]}

        return _call(f"{self.name}.delete", _do)

    # -- reads -------------------------------------------------------------

    def get(self, record_id: str) -> dict[str, Any]:
        return _call(f"{self.name}.get", lambda: self.store.get_by_id(record_id))

    def get_all(self, include_inactive: bool = False, **filters) -> dict[str, Any]:
        return _call(f"{self.name}.get_all", lambda: self.store.get_all(include_inactive=include_inactive, **filters))

    def search_by_field(self, field: str, value, include_inactive: bool = False) -> dict[str, Any]:
        return _call(f"{self.name}.search_by_field", lambda: self.store.search_by_field(field, value, include_inactive=include_inactive))

    def search(self, term: str, include_inactive: bool = False) -> dict[str, Any]:
        return _call(f"{self.name}.search", lambda: self.store.search(term, include_inactive=include_inactive))

    def search_by_proximity(self, lat: float, lng: float, radius_km: float = 5, include_inactive: bool = False) -> dict[str, Any]:
        return _call(
            f"{self.name}.search_by_proximity",
            lambda: self.store.search_by_proximity(lat, lng, radius_km=radius_km, include_inactive=include_inactive),
        )

    def stats(self) -> dict[str, Any]:
        return _call(f"{self.name}.stats", self.store.stats)

    def operations(self, record_id: str) -> dict[str, Any]:
        return _call(f"{self.name}.operations", lambda: self.queue.operations_for_entity(record_id, self.name))


class AddressService(EntityService):
    """Delivery addresses: the department > commune > district > neighborhood cascade, export and bulk seeding."""

    def departments(self) -> dict[str, Any]:
        return _call("addresses.departments", lambda: self.store.distinct_values("department"))

    def communes(self, department: Optional[str] = None) -> dict[str, Any]:
        return _call("addresses.communes", lambda: self.store.distinct_values("commune", department=department))

    def districts(self, commune: Optional[str] = None) -> dict[str, Any]:
        return _call("addresses.districts", lambda: self.store.distinct_values("district", commune=commune))

    def neighborhoods(self, district: Optional[str] = None) -> dict[str, Any]:
        return _call("addresses.neighborhoods", lambda: self.store.distinct_values("neighborhood", district=district))

    def grouped_by_department(self, include_inactive: bool = False) -> dict[str, Any]:
        return _call("addresses.grouped", lambda: self.store.grouped_by("department", include_inactive=include_inactive))

    def export(self, fmt: str = "json", include_inactive: bool = True) -> dict[str, Any]:
        def _do():
            records = self.store.get_all(include_inactive=include_inactive)
            if fmt == "csv":
                return addresses_to_csv(records)
            if fmt == "json":
                return addresses_to_json(records)
            raise ValidationError(f"unknown export format {fmt!r}", {"allowed": ["csv", "json"]})

        return _call("addresses.export", _do)

    def import_addresses(self, items, on_progress: Optional[Callable[[int, int, Any], None]] = None) -> dict[str, Any]:
        """
        Create every address not already known locally (same department, commune, district
        and neighborhood, active or not). Each creation is queued like a manual one; one bad
        item is recorded in `errors` and the rest still go in.
        """

        def _do():
            rows = flatten_address_groups(items)
            out: dict[str, Any] = {"total": len(rows), "created": 0, "existing": 0, "failed": 0, "errors": []}
            for i, item in enumerate(rows, 1):
                try:
                    if not isinstance(item, dict):
                        raise ValidationError("address must be an object")
                    key = {f: str(item.get(f) or "") for f in HIERARCHY_FIELDS}
                    if self.store.first_match(**key) is not None:
                        out["existing"] += 1
                    else:
                        with self.store.db.transaction() as cur:
                            rec = self.store.add(item, cur=cur)
                            self.queue.enqueue(self.name, "CREATE", rec["id"], _strip_meta(rec), cur=cur)
                        out["created"] += 1
                except SyncError as ex:
                    out["failed"] += 1
                    out["errors"].append({"index": i - 1, "error": ex.message, **({"details": ex.details} if ex.details else {})})
                if on_progress is not None:
                    on_progress(i, len(rows), item)
            json_log("info", "addresses.import.done", **{k: v for k, v in out.items() if k != "errors"})
            return out

        return _call("addresses.import", _do)


class OrderService(EntityService):
    def _check_editable(self, existing: dict[str, Any]) -> None:
        status = existing.get("order_status") or "open"
        if status != "open":
            raise ClosedError(f"order {existing['id']} is {status}", {"order_status": status})

    def apply_promotion(self, record_id: str, promotion: Optional[dict[str, Any]]) -> dict[str, Any]:
        """Attach (or clear, with None) a promotion and recompute the payment totals."""

        def _totals():
            existing = self.store.get_by_id(record_id)
            promo = Promotion.model_validate(promotion) if promotion is not None else None
            order = Order.model_validate(_strip_meta(existing))
            total = order_total(order)
            after, _discount = apply_promotion(total, promo)
            payment = {**order.payment.model_dump(mode="json"), "total": str(total), "total_after_discount": str(after)}
            return {"promotion": promo.model_dump(mode="json") if promo else None, "payment": payment}

        try:
            patch = _totals()
        except SyncError as ex:
            return error_result(ex)
        except Exception as ex:
            return error_result(ValidationError(f"invalid promotion: {ex}"))
        return self.update(record_id, patch)

    def totals(self, record_id: str) -> dict[str, Any]:
        def _do():
            order = Order.model_validate(_strip_meta(self.store.get_by_id(record_id)))
            total = order_total(order)
            after, discount = apply_promotion(total, order.promotion)
            return {"total": str(total), "discount": str(discount), "total_after_discount": str(after), "paid": str(order.payment.paid)}

        return _call("orders.totals", _do)

    def clean_cache(self) -> dict[str, Any]:
        return _call(
            "orders.clean_cache",
            lambda: {"removed": self.store.clean_cache(exclude_ids=self.queue.outstanding_ids(self.name))},
        )


_SERVICE_CLASSES = {"addresses": AddressService, "orders": OrderService}


class SyncEngine:
    """
    Composition root. Built once per process with the local DB, a remote backend
    client and the connectivity signal; everything else hangs off it.
    """

    def __init__(
        self,
        db: LocalDB,
        remote,
        connectivity: Optional[Connectivity] = None,
        *,
        entities: Optional[Iterable[EntitySpec]] = None,
        max_retries: int = 3,
        interval_seconds: float = 300,
        retention_days: int = 7,
        needs_sync_minutes: int = 10,
    ):
        self.db = db
        self.remote = remote
        self.connectivity = connectivity or Connectivity(online=True)
        self.queue = OperationQueue(db, max_retries=max_retries)
        self.metadata = SyncMetadata(db)
        self.retention_days = retention_days
        self.services: dict[str, EntityService] = {}
        sessions: dict[str, EntitySession] = {}
        for spec in entities or ENTITIES.values():
            store = LocalStore(db, spec)
            applier = RemoteChangeApplier(store, self.queue)
            sessions[spec.name] = EntitySession(
                spec,
                store,
                PullEngine(spec, store, self.queue, remote, self.connectivity, self.metadata, applier),
                PushEngine(spec, store, self.queue, remote, self.connectivity, self.metadata),
                RealtimeListener(spec, remote, applier),
            )
            service_cls = _SERVICE_CLASSES.get(spec.name, EntityService)
            self.services[spec.name] = service_cls(spec, store, self.queue)
        self.orchestrator = SyncOrchestrator(
            sessions,
            self.connectivity,
            self.metadata,
            self.queue,
            interval_seconds=interval_seconds,
            retention_days=retention_days,
            needs_sync_minutes=needs_sync_minutes,
        )

    @classmethod
    def from_settings(cls, remote, settings, connectivity: Optional[Connectivity] = None) -> "SyncEngine":
        return cls(
            LocalDB(settings.local_db_path),
            remote,
            connectivity,
            max_retries=settings.queue_max_retries,
            interval_seconds=settings.auto_sync_interval_seconds,
            retention_days=settings.processed_retention_days,
            needs_sync_minutes=settings.needs_sync_minutes,
        )

    def entity(self, name: str) -> EntityService:
        try:
            return self.services[name]
        except KeyError:
            raise ValidationError(f"unknown entity: {name}", {"allowed": sorted(self.services)}) from None

    @property
    def addresses(self) -> AddressService:
        return self.services["addresses"]

    @property
    def orders(self) -> OrderService:
        return self.services["orders"]

    @property
    def couriers(self) -> EntityService:
        return self.services["couriers"]

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.stop()

    # -- sync ----------------------------------------------------------------

    def _check_entity(self, entity: Optional[str]) -> Optional[dict[str, Any]]:
        if entity is not None and entity not in self.services:
            return error_result(ValidationError(f"unknown entity: {entity}", {"allowed": sorted(self.services)}))
        return None

    async def sync_pull(self, entity: Optional[str] = None) -> dict[str, Any]:
        return self._check_entity(entity) or await self.orchestrator.sync_pull(entity)

    async def sync_push(self, entity: Optional[str] = None) -> dict[str, Any]:
        return self._check_entity(entity) or await self.orchestrator.sync_push(entity)

    async def sync_full(self, entity: Optional[str] = None) -> dict[str, Any]:
        return self._check_entity(entity) or await self.orchestrator.sync_full(entity)

    def get_sync_status(self) -> dict[str, Any]:
        return _call("sync.status", self.orchestrator.status)

    def needs_sync(self, entity: Optional[str] = None, threshold_minutes: Optional[int] = None) -> dict[str, Any]:
        bad = self._check_entity(entity)
        if bad:
            return bad
        names = [entity] if entity else list(self.services)
        return _call("sync.needs_sync", lambda: any(self.orchestrator.needs_sync(n, threshold_minutes) for n in names))

    # -- queue maintenance -----------------------------------------------------

    def queue_stats(self, entity: Optional[str] = None) -> dict[str, Any]:
        return self._check_entity(entity) or _call("queue.stats", lambda: self.queue.stats(entity))

    def retry_failed(self, entry_id: Optional[int] = None, entity: Optional[str] = None) -> dict[str, Any]:
        """Re-arm one failed entry, or every failed entry (optionally for one entity)."""
        bad = self._check_entity(entity)
        if bad:
            return bad

        def _do():
            if entry_id is None:
                return {"retried": self.queue.retry_all_failed(entity)}
            self.queue.retry_failed(entry_id)
            return {"retried": 1}

        return _call("queue.retry_failed", _do)

    def failed_entries(self, entity: Optional[str] = None) -> dict[str, Any]:
        return self._check_entity(entity) or _call("queue.failed", lambda: self.queue.failed_entries(entity))

    async def resolve_conflict(self, entry_id: int, keep: str = "remote") -> dict[str, Any]:
        """Settle a failed entry by taking the backend copy (keep="remote") or resending the local edits (keep="local")."""
        try:
            entry = self.queue.get(entry_id)
        except SyncError as ex:
            return error_result(ex)
        session = self.orchestrator.sessions.get(entry["entity_type"])
        if session is None:
            return error_result(ValidationError(f"unknown entity: {entry['entity_type']}"))
        return await session.resolve_conflict(entry_id, keep)

    def cleanup_processed(self, days_old: Optional[int] = None) -> dict[str, Any]:
        days = self.retention_days if days_old is None else days_old
        return _call("queue.cleanup", lambda: {"removed": self.queue.cleanup_processed(days)})

    def db_stats(self) -> dict[str, Any]:
        def _do():
            return {
                "tables": self.db.counts(),
                "entities": {name: svc.store.stats() for name, svc in self.services.items()},
                "queue": self.queue.stats(),
                "initial_sync_done": self.metadata.initial_sync_done(),
            }

        return _call("db.stats", _do)

    def reset(self) -> dict[str, Any]:
        def _do():
            self.db.reset()
            json_log("warn", "db.reset", path=self.db.path)
            return {"reset": True}

        return _call("db.reset", _do)
