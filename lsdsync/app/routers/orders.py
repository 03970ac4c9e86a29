from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from ..deps import get_engine, unwrap
from ..engine import SyncEngine

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderIn(BaseModel):
    # Full validation happens in the store against the order schema.
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    order_type: str = "dine_in"
    client: Optional[str] = None
    items: list[dict[str, Any]] = []


class OrderUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")


class PromotionIn(BaseModel):
    promotion: Optional[dict[str, Any]] = None


@router.get("")
def list_orders(
    order_type: Optional[str] = None,
    order_status: Optional[str] = None,
    delivery_status: Optional[str] = None,
    payment_status: Optional[str] = None,
    courier_id: Optional[str] = None,
    engine: SyncEngine = Depends(get_engine),
):
    rows = unwrap(
        engine.orders.get_all(
            order_type=order_type,
            order_status=order_status,
            delivery_status=delivery_status,
            payment_status=payment_status,
            courier_id=courier_id,
        )
    )
    return {"orders": rows}


@router.get("/search")
def search_orders(field: str, value: str, engine: SyncEngine = Depends(get_engine)):
    return {"orders": unwrap(engine.orders.search_by_field(field, value))}


@router.get("/stats")
def order_stats(engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.orders.stats())


@router.post("/clean-cache")
def clean_order_cache(engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.orders.clean_cache())


@router.get("/{order_id}")
def get_order(order_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"order": unwrap(engine.orders.get(order_id))}


@router.get("/{order_id}/totals")
def order_totals(order_id: str, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.orders.totals(order_id))


@router.get("/{order_id}/operations")
def order_operations(order_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"operations": unwrap(engine.orders.operations(order_id))}


@router.post("")
def create_order(data: OrderIn, engine: SyncEngine = Depends(get_engine)):
    return {"order": unwrap(engine.orders.create(data.model_dump(exclude_none=True)))}


@router.patch("/{order_id}")
def update_order(order_id: str, data: OrderUpdate, engine: SyncEngine = Depends(get_engine)):
    return {"order": unwrap(engine.orders.update(order_id, data.model_dump()))}


@router.post("/{order_id}/promotion")
def apply_order_promotion(order_id: str, data: PromotionIn, engine: SyncEngine = Depends(get_engine)):
    return {"order": unwrap(engine.orders.apply_promotion(order_id, data.promotion))}


@router.delete("/{order_id}")
def delete_order(order_id: str, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.orders.delete(order_id))
