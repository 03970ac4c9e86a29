from __future__ import annotations

from typing import Any, Optional


class SyncError(Exception):
    code = "error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(SyncError):
    """Malformed input caught at the API boundary. Never enqueued."""

    code = "validation"


class NotFoundError(SyncError):
    code = "not_found"


class ClosedError(SyncError):
    """The record is in a terminal state and no longer accepts edits."""

    code = "closed"


class RemoteError(SyncError):
    """Anything the remote backend client surfaces: network, rejection, auth."""

    code = "remote"


class ConflictError(RemoteError):
    """The remote row moved past the version the local edit was based on."""

    code = "conflict"


class OfflineError(SyncError):
    code = "offline"


class BusyError(SyncError):
    """A sync cycle for the same entity is already running."""

    code = "busy"


def error_result(exc: Exception) -> dict:
    if isinstance(exc, SyncError):
        out = {"success": False, "error": exc.message, "code": exc.code}
        if exc.details:
            out["details"] = exc.details
        return out
    return {"success": False, "error": str(exc), "code": "error"}


_ERRORS_BY_CODE = {
    cls.code: cls for cls in (ValidationError, NotFoundError, ClosedError, RemoteError, ConflictError, OfflineError, BusyError)
}


def error_from_result(result: dict) -> SyncError:
    """Rebuild the exception behind a failed result envelope."""
    cls = _ERRORS_BY_CODE.get(result.get("code"), SyncError)
    return cls(result.get("error") or "sync error", result.get("details"))
