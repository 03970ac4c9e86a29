from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from .errors import ValidationError

ChangeHandler = Callable[[dict[str, Any]], Union[Awaitable[None], None]]

FILTER_OPS = ("eq", "gte", "lte")


class RemoteBackend(Protocol):
    """
    What the sync engine needs from the hosted database. Implementations own all
    wire-level concerns; every failure surfaces as `RemoteError` (or `ConflictError`).
    """

    async def select_all(self, table: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
        self,
        table: str,
        record_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> dict[str, Any]: ...

    async def delete(self, table: str, record_id: str) -> None: ...

    async def subscribe(
        self,
        table: str,
        on_insert: ChangeHandler,
        on_update: ChangeHandler,
        on_delete: ChangeHandler,
    ) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...

    async def health(self) -> bool: ...


def normalize_filters(filters: Optional[dict[str, Any]]) -> list[tuple[str, str, Any]]:
    """
    Accept `{column: value}` (equality) or `{column: (op, value)}` and return
    `[(column, op, value), ...]` sorted by column for stable SQL.
    """
    out = []
    for col, raw in sorted((filters or {}).items()):
        if isinstance(raw, tuple):
            if len(raw) != 2:
                raise ValidationError(f"invalid filter for {col}")
            op, value = raw
        else:
            op, value = "eq", raw
        op = str(op).strip().lower()
        if op not in FILTER_OPS:
            raise ValidationError(f"unsupported filter op {op!r} for {col}")
        out.append((str(col), op, value))
    return out
