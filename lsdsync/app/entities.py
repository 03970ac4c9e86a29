from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel

from .schemas import Address, Courier, Order


@dataclass(frozen=True)
class EntitySpec:
    name: str
    remote_table: str
    schema: type[BaseModel]
    # Columns mirrored out of the JSON body so SQLite can index them.
    index_fields: tuple[str, ...] = ()
    category_field: Optional[str] = None
    soft_delete: bool = True
    versioned: bool = False
    location_field: Optional[str] = None
    # Index fields matched by free-text search.
    search_fields: tuple[str, ...] = ()
    # Narrows the remote set a pull fetches (e.g. only today's orders).
    pull_filter: Optional[Callable[[], dict[str, Any]]] = field(default=None, compare=False)


def _today_start_utc() -> dict[str, Any]:
    start = datetime.combine(date.today(), time.min).astimezone(timezone.utc)
    return {"created_at": ("gte", start.isoformat())}


ADDRESSES = EntitySpec(
    name="addresses",
    remote_table="addresses",
    schema=Address,
    index_fields=("department", "commune", "district", "neighborhood"),
    category_field="department",
    location_field="location",
    search_fields=("department", "commune", "district", "neighborhood"),
)

ORDERS = EntitySpec(
    name="orders",
    remote_table="orders",
    schema=Order,
    index_fields=("order_type", "order_status", "delivery_status", "payment_status", "courier_id"),
    category_field="order_status",
    soft_delete=False,
    versioned=True,
    pull_filter=_today_start_utc,
)

COURIERS = EntitySpec(
    name="couriers",
    remote_table="couriers",
    schema=Courier,
    index_fields=("name", "contact"),
    search_fields=("name", "contact"),
)

ENTITIES: dict[str, EntitySpec] = {s.name: s for s in (ADDRESSES, ORDERS, COURIERS)}


def get_spec(name: str) -> EntitySpec:
    try:
        return ENTITIES[name]
    except KeyError:
        raise KeyError(f"unknown entity: {name}") from None
