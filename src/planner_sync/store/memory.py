from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from planner_sync.core.models import Page, Record, ResourceKind
from planner_sync.core.utils import normalize_filters
from planner_sync.store.errors import StoreError, StoreRequestError, TransientStoreError
from planner_sync.store.interfaces import RemoteStore
from planner_sync.store.resources import get_resource

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StoreCall:
    method: str
    resource: str
    record_id: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)


class InMemoryRemoteStore(RemoteStore):
    """
    A deterministic in-process Data Store.

    Records are kept per resource in insertion order; pages are served by
    position with the cursor being the index of the next record. Ids are
    assigned from a shared counter starting at `first_id`. Set `online` to False
    to fail every call with a network error, or queue specific exceptions with
    `fail_next`.
    """

    def __init__(self, *, page_size: int = 10, first_id: int = 1) -> None:
        self.page_size = page_size
        self.online = True
        self.calls: list[StoreCall] = []
        self._records: dict[str, dict[str, Record]] = {}
        self._ids = itertools.count(first_id)
        self._failures: list[StoreError] = []

    def seed(self, resource: ResourceKind, records: list[Record]) -> None:
        bucket = self._records.setdefault(resource, {})
        for record in records:
            bucket[record.id] = Record(id=record.id, fields=dict(record.fields))

    def records(self, resource: ResourceKind) -> list[Record]:
        return list(self._records.get(resource, {}).values())

    def fail_next(self, error: StoreError) -> None:
        self._failures.append(error)

    def calls_for(self, method: str) -> list[StoreCall]:
        return [call for call in self.calls if call.method == method]

    def _check(self, resource: str) -> None:
        if not self.online:
            raise TransientStoreError("Data Store is unreachable", resource=resource)
        if self._failures:
            raise self._failures.pop(0)

    def _matches(self, record: Record, filters: Mapping[str, str]) -> bool:
        for name, value in filters.items():
            if name == "search":
                haystack = " ".join(str(v) for v in record.fields.values()).lower()
                if value.lower() not in haystack:
                    return False
                continue
            if str(record.fields.get(name, "")).lower() != value.lower():
                return False
        return True

    async def fetch_page(
        self,
        resource: ResourceKind,
        filters: Optional[Mapping[str, str]] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        spec = get_resource(resource)
        normalized = normalize_filters(filters)
        spec.validate_filters(normalized)
        self.calls.append(StoreCall("fetch_page", resource, fields=dict(normalized)))
        self._check(resource)

        matching = [
            Record(id=r.id, fields=dict(r.fields))
            for r in self._records.get(resource, {}).values()
            if self._matches(r, normalized)
        ]
        if not spec.pagination_key:
            return Page(records=matching, total=len(matching))

        start = int(cursor) if cursor else 0
        end = start + self.page_size
        has_more = end < len(matching)
        return Page(
            records=matching[start:end],
            cursor=str(end) if has_more else None,
            has_more=has_more,
            total=len(matching),
        )

    async def create(self, resource: ResourceKind, fields: Mapping[str, Any]) -> Record:
        spec = get_resource(resource)
        self.calls.append(StoreCall("create", resource, fields=dict(fields)))
        self._check(resource)

        if spec.natural_id_field and fields.get(spec.natural_id_field):
            record_id = str(fields[spec.natural_id_field])
        else:
            record_id = str(next(self._ids))
        record = Record(id=record_id, fields=dict(fields))
        self._records.setdefault(resource, {})[record_id] = record
        logger.debug("In-memory record created. resource=%s record_id=%s", resource, record_id)
        return Record(id=record.id, fields=dict(record.fields))

    async def update(self, resource: ResourceKind, record_id: str, fields: Mapping[str, Any]) -> Record:
        self.calls.append(StoreCall("update", resource, record_id=record_id, fields=dict(fields)))
        self._check(resource)

        bucket = self._records.setdefault(resource, {})
        current = bucket.get(record_id)
        if current is None:
            if not get_resource(resource).singleton:
                raise StoreRequestError(f"Record not found: {record_id}", resource=resource, status=404)
            current = Record(id=record_id)
        updated = current.with_fields(dict(fields))
        bucket[record_id] = updated
        return Record(id=updated.id, fields=dict(updated.fields))

    async def delete(self, resource: ResourceKind, record_id: str) -> bool:
        self.calls.append(StoreCall("delete", resource, record_id=record_id))
        self._check(resource)
        return self._records.get(resource, {}).pop(record_id, None) is not None
