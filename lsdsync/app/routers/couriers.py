from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_engine, unwrap
from ..engine import SyncEngine

router = APIRouter(prefix="/couriers", tags=["couriers"])


class CourierIn(BaseModel):
    id: Optional[str] = None
    name: str
    contact: str = ""


class CourierUpdate(BaseModel):
    name: Optional[str] = None
    contact: Optional[str] = None


@router.get("")
def list_couriers(
    include_inactive: bool = False,
    name: Optional[str] = None,
    contact: Optional[str] = None,
    engine: SyncEngine = Depends(get_engine),
):
    return {"couriers": unwrap(engine.couriers.get_all(include_inactive=include_inactive, name=name, contact=contact))}


@router.get("/search")
def search_couriers(q: str, include_inactive: bool = False, engine: SyncEngine = Depends(get_engine)):
    return {"couriers": unwrap(engine.couriers.search(q, include_inactive=include_inactive))}


@router.get("/stats")
def courier_stats(engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.couriers.stats())


@router.get("/{courier_id}")
def get_courier(courier_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"courier": unwrap(engine.couriers.get(courier_id))}


@router.post("")
def create_courier(data: CourierIn, engine: SyncEngine = Depends(get_engine)):
    return {"courier": unwrap(engine.couriers.create(data.model_dump(exclude_none=True)))}


@router.patch("/{courier_id}")
def update_courier(courier_id: str, data: CourierUpdate, engine: SyncEngine = Depends(get_engine)):
    return {"courier": unwrap(engine.couriers.update(courier_id, data.model_dump(exclude_unset=True)))}


@router.post("/{courier_id}/deactivate")
def deactivate_courier(courier_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"courier": unwrap(engine.couriers.deactivate(courier_id))}


@router.post("/{courier_id}/activate")
def activate_courier(courier_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"courier": unwrap(engine.couriers.activate(courier_id))}


@router.delete("/{courier_id}")
def delete_courier(courier_id: str, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.couriers.delete(courier_id))
