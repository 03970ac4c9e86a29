from __future__ import annotations

import csv
import io
import json
from typing import Any, Iterable

from .errors import ValidationError
from .local_store import _strip_meta

HIERARCHY_FIELDS = ("department", "commune", "district", "neighborhood")

CSV_COLUMNS = ["id", "department", "commune", "district", "neighborhood", "label", "lat", "lng", "is_active", "created_at"]


def addresses_to_csv(records: Iterable[dict[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for r in records:
        loc = r.get("location") or {}
        writer.writerow(
            [
                r.get("id"),
                r.get("department") or "",
                r.get("commune") or "",
                r.get("district") or "",
                r.get("neighborhood") or "",
                r.get("label") or "",
                loc.get("lat", ""),
                loc.get("lng", ""),
                "true" if r.get("is_active", True) else "false",
                r.get("created_at") or "",
            ]
        )
    return output.getvalue()


def addresses_to_json(records: Iterable[dict[str, Any]]) -> str:
    return json.dumps([_strip_meta(r) for r in records], indent=2, default=str)


def flatten_address_groups(data) -> list[Any]:
    """
    Seed files list addresses either flat or grouped by department:

        [{"department": "Littoral", "addresses": [{"commune": "Douala 5", ...}, ...]}, ...]

    Grouped entries inherit the group's department unless they carry their own.
    """
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValidationError("address seed data must be a list")
    flat: list[Any] = []
    for entry in data:
        if isinstance(entry, dict) and isinstance(entry.get("addresses"), list):
            dept = entry.get("department")
            for item in entry["addresses"]:
                if isinstance(item, dict) and dept and not item.get("department"):
                    item = {**item, "department": dept}
                flat.append(item)
        else:
            flat.append(entry)
    return flat


def load_seed_file(path: str) -> list[Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as ex:
        raise ValidationError(f"cannot read address seed file {path}: {ex}") from ex
    return flatten_address_groups(data)
