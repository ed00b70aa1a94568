from __future__ import annotations

from typing import Iterable, Optional

from planner_sync.core.models import Record


class RecordView:
    """The ordered record set a UI surface displays for one resource."""

    def __init__(self) -> None:
        self._records: dict[str, Record] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def records(self) -> list[Record]:
        return list(self._records.values())

    def get(self, record_id: str) -> Optional[Record]:
        return self._records.get(record_id)

    def replace_all(self, records: Iterable[Record]) -> None:
        """Show `records`, keeping unconfirmed placeholders at the front."""
        placeholders = [r for r in self._records.values() if not r.confirmed]
        merged: dict[str, Record] = {r.id: r for r in placeholders}
        for record in records:
            merged[record.id] = record
        self._records = merged

    def put(self, record: Record) -> None:
        self._records[record.id] = record

    def prepend(self, record: Record) -> None:
        rest = {k: v for k, v in self._records.items() if k != record.id}
        self._records = {record.id: record, **rest}

    def swap(self, old_id: str, record: Record) -> None:
        """Replace `old_id` with `record` in the same position, dropping any other copy of `record.id`."""
        swapped: dict[str, Record] = {}
        for key, current in self._records.items():
            if key == old_id:
                swapped[record.id] = record
            elif key != record.id:
                swapped[key] = current
        if record.id not in swapped:
            swapped = {record.id: record, **swapped}
        self._records = swapped

    def remove(self, record_id: str) -> Optional[Record]:
        return self._records.pop(record_id, None)

    def clear(self) -> None:
        self._records = {}
