"""
Record-level rewrites of cached query results.

A cached query result is either a list of records or a mapping holding that
list under a data field (``{"data": [...]}``). Records are mappings carrying
an id field. Ids are compared by their string form.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, MutableMapping


class Operation(str, Enum):
    """Upstream change kinds understood by FastCache.propagate."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REFRESH = "refresh"

    @classmethod
    def parse(cls, value: "Operation | str") -> "Operation":
        """Map a string onto an Operation; anything unknown means REFRESH."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.REFRESH


def records_of(value: Any, data_field: str = "data") -> list | None:
    """Return the mutable record list inside a cached value, if there is one."""
    if isinstance(value, list):
        return value
    if isinstance(value, MutableMapping):
        records = value.get(data_field)
        if isinstance(records, list):
            return records
    return None


def _matches(record: Any, record_id: Any, id_field: str) -> bool:
    if not isinstance(record, Mapping):
        return False
    current = record.get(id_field)
    return current is not None and str(current) == str(record_id)


def apply_update(
    records: list, record_id: Any, patch: Mapping | None, id_field: str = "id"
) -> bool:
    """Merge patch into the first matching record. Returns True on a match."""
    for index, record in enumerate(records):
        if _matches(record, record_id, id_field):
            records[index] = {**record, **(patch or {})}
            return True
    return False


def apply_delete(records: list, record_id: Any, id_field: str = "id") -> int:
    """Remove every matching record in place. Returns how many were removed."""
    kept = [record for record in records if not _matches(record, record_id, id_field)]
    removed = len(records) - len(kept)
    if removed:
        records[:] = kept
    return removed


def apply_create(records: list, record: Any) -> None:
    """Prepend record; mappings are copied so linked lists never share one dict."""
    records.insert(0, dict(record) if isinstance(record, Mapping) else record)
