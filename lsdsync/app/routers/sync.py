from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_engine, unwrap
from ..engine import SyncEngine
from ..validation import ConflictSide

router = APIRouter(prefix="/sync", tags=["sync"])


class RetryIn(BaseModel):
    entry_id: Optional[int] = None
    entity: Optional[str] = None


class ResolveConflictIn(BaseModel):
    entry_id: int
    keep: ConflictSide


class ConnectivityIn(BaseModel):
    online: bool


@router.get("/status")
def sync_status(engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.get_sync_status())


@router.get("/needs-sync")
def needs_sync(entity: Optional[str] = None, threshold_minutes: Optional[int] = None, engine: SyncEngine = Depends(get_engine)):
    return {"needs_sync": unwrap(engine.needs_sync(entity, threshold_minutes))}


@router.post("/pull")
async def sync_pull(entity: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return unwrap(await engine.sync_pull(entity))


@router.post("/push")
async def sync_push(entity: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return unwrap(await engine.sync_push(entity))


@router.post("/full")
async def sync_full(entity: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return unwrap(await engine.sync_full(entity))


@router.get("/queue")
def queue_stats(entity: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.queue_stats(entity))


@router.post("/retry-failed")
def retry_failed(data: RetryIn, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.retry_failed(entry_id=data.entry_id, entity=data.entity))


@router.get("/failed")
def failed_entries(entity: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return {"entries": unwrap(engine.failed_entries(entity))}


@router.post("/resolve-conflict")
async def resolve_conflict(data: ResolveConflictIn, engine: SyncEngine = Depends(get_engine)):
    return unwrap(await engine.resolve_conflict(data.entry_id, keep=data.keep))


@router.post("/cleanup")
def cleanup_processed(days_old: Optional[int] = None, engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.cleanup_processed(days_old))


@router.get("/db-stats")
def db_stats(engine: SyncEngine = Depends(get_engine)):
    return unwrap(engine.db_stats())


@router.get("/connectivity")
def get_connectivity(engine: SyncEngine = Depends(get_engine)):
    return engine.connectivity.snapshot()


@router.post("/connectivity")
async def set_connectivity(data: ConnectivityIn, engine: SyncEngine = Depends(get_engine)):
    changed = await engine.connectivity.set_online(data.online)
    return {**engine.connectivity.snapshot(), "changed": changed}
