import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .connectivity import Connectivity, ConnectivityProbe
from .engine import SyncEngine
from .errors import SyncError
from .jsonlog import json_log
from .remote_pg import PostgresRemote
from .routers.addresses import router as addresses_router
from .routers.couriers import router as couriers_router
from .routers.orders import router as orders_router
from .routers.sync import router as sync_router

STARTED_AT_UTC = datetime.now(timezone.utc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests (and embedding hosts) install their own engine on app.state before startup.
    if getattr(app.state, "engine", None) is not None:
        yield
        return

    remote = PostgresRemote.from_settings(settings)
    await remote.open()
    connectivity = Connectivity(online=False)
    engine = SyncEngine.from_settings(remote, settings, connectivity)
    probe = ConnectivityProbe(connectivity, remote, interval_seconds=settings.connectivity_probe_seconds)
    app.state.engine = engine
    await engine.start()
    await probe.check()
    probe.start()
    json_log("info", "startup.engine_started", env=settings.env, version=settings.api_version, db_path=settings.local_db_path)
    try:
        yield
    finally:
        await probe.stop()
        await engine.stop()
        await remote.close()
        app.state.engine = None
        json_log("info", "shutdown.engine_stopped")


app = FastAPI(title="LSD Sync API", version=settings.api_version, lifespan=lifespan)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


# Facade error codes -> HTTP status. Anything else is a 500.
_STATUS_BY_CODE = {
    "validation": 422,
    "not_found": 404,
    "conflict": 409,
    "closed": 409,
    "offline": 503,
    "remote": 503,
    "busy": 503,
}


@app.exception_handler(SyncError)
def _sync_error(req: Request, exc: SyncError):
    status = _STATUS_BY_CODE.get(exc.code, 500)
    detail = {"error": exc.message, "code": exc.code}
    if exc.details:
        detail["details"] = exc.details
    if status >= 500:
        json_log(
            "warn",
            "http.request.sync_error",
            request_id=_current_request_id(req),
            method=req.method,
            path=req.url.path,
            code=exc.code,
            error=exc.message,
        )
    return JSONResponse(status_code=status, content={"detail": detail})


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            duration_ms=int((time.time() - started) * 1000),
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    if path != "/health":
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response


# The POS UI is served from a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(addresses_router)
app.include_router(orders_router)
app.include_router(couriers_router)
app.include_router(sync_router)


@app.get("/health")
def health(req: Request):
    engine = getattr(req.app.state, "engine", None)
    content = {
        "status": "ok" if engine is not None else "starting",
        "env": settings.env,
        "service": "lsdsync",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _current_request_id(req),
    }
    if engine is None:
        return JSONResponse(status_code=503, content=content)
    content["online"] = engine.connectivity.online
    content["pending"] = engine.queue.stats()["pending"]
    return content
