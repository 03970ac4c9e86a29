from typing import Any, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from ..deps import get_engine, unwrap
from ..engine import SyncEngine
from ..errors import ValidationError
from ..schemas import Location

router = APIRouter(prefix="/addresses", tags=["addresses"])


class AddressIn(BaseModel):
    id: Optional[str] = None
    department: str = ""
    commune: str = ""
    district: str = ""
    neighborhood: str = ""
    label: Optional[str] = None
    location: Optional[Location] = None


class AddressImportIn(BaseModel):
    # Flat address objects, or department groups: {"department": ..., "addresses": [...]}.
    addresses: list[dict[str, Any]]


class AddressUpdate(BaseModel):
    department: Optional[str] = None
    commune: Optional[str] = None
    district: Optional[str] = None
    neighborhood: Optional[str] = None
    label: Optional[str] = None
    location: Optional[Location] = None


@router.get("")
def list_addresses(
    include_inactive: bool = False,
    department: Optional[str] = None,
    commune: Optional[str] = None,
    district: Optional[str] = None,
    neighborhood: Optional[str] = None,
    engine: SyncEngine = Depends(get_engine),
):
    rows = unwrap(
        engine.addresses.get_all(
            include_inactive=include_inactive,
            department=department,
            commune=commune,
            district=district,
            neighborhood=neighborhood,
        )
    )
    return {"addresses": rows}


@router.get("/nearby")
def nearby_addresses(
    lat: float,
    lng: float,
    radius_km: float = 5,
    include_inactive: bool = False,
    engine: SyncEngine = Depends(get_engine),
):
    rows = unwrap(engine.addresses.search_by_proximity(lat, lng, radius_km=radius_km, include_inactive=include_inactive))
    return {"addresses": rows}


@router.get("/search")
def search_addresses(
    q: Optional[str] = None,
    field: Optional[str] = None,
    value: Optional[str] = None,
    include_inactive: bool = False,
    engine: SyncEngine = Depends(get_engine),
):
    if q is not None:
        return {"addresses": unwrap(engine.addresses.search(q, include_inactive=include_inactive))}
    if field is None or value is None:
        raise ValidationError("pass q, or field and value")
    return {"addresses": unwrap(engine.addresses.search_by_field(field, value, include_inactive=include_inactive))}


@router.get("/stats")
def address_stats(engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.addresses.stats())


@router.get("/departments")
def list_departments(engine: SyncEngine = Depends(get_engine)):
    return {"departments": unwrap(engine.addresses.departments())}


@router.get("/communes")
def list_communes(department: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return {"communes": unwrap(engine.addresses.communes(department))}


@router.get("/districts")
def list_districts(commune: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return {"districts": unwrap(engine.addresses.districts(commune))}


@router.get("/neighborhoods")
def list_neighborhoods(district: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return {"neighborhoods": unwrap(engine.addresses.neighborhoods(district))}


@router.get("/grouped")
def addresses_by_department(include_inactive: bool = False, engine: SyncEngine = Depends(get_engine)):
    return {"departments": unwrap(engine.addresses.grouped_by_department(include_inactive=include_inactive))}


@router.get("/export")
def export_addresses(format: str = "json", include_inactive: bool = True, engine: SyncEngine = Depends(get_engine)):
    body = unwrap(engine.addresses.export(format, include_inactive=include_inactive))
    media_type = "text/csv" if format == "csv" else "application/json"
    return Response(content=body, media_type=media_type)


@router.post("/import")
def import_addresses(data: AddressImportIn, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.addresses.import_addresses(data.addresses))


@router.get("/{address_id}")
def get_address(address_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"address": unwrap(engine.addresses.get(address_id))}


@router.post("")
def create_address(data: AddressIn, engine: SyncEngine = Depends(get_engine)):
    return {"address": unwrap(engine.addresses.create(data.model_dump(exclude_none=True)))}


@router.patch("/{address_id}")
def update_address(address_id: str, data: AddressUpdate, engine: SyncEngine = Depends(get_engine)):
    return {"address": unwrap(engine.addresses.update(address_id, data.model_dump(exclude_unset=True)))}


@router.post("/{address_id}/deactivate")
def deactivate_address(address_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"address": unwrap(engine.addresses.deactivate(address_id))}


@router.post("/{address_id}/activate")
def activate_address(address_id: str, engine: SyncEngine = Depends(get_engine)):
    return {"address": unwrap(engine.addresses.activate(address_id))}


@router.delete("/{address_id}")
def delete_address(address_id: str, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.addresses.delete(address_id))
