from fastapi import HTTPException, Request

from .engine import SyncEngine
from .errors import error_from_result


def get_engine(request: Request) -> SyncEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="sync engine not ready")
    return engine


def unwrap(result: dict):
    """Return `data` of a successful facade result, or raise the error it carries (see the SyncError handler in main)."""
    if result.get("success"):
        return result.get("data")
    raise error_from_result(result)
