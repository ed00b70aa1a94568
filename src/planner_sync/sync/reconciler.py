from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from planner_sync.cache.local_cache import LocalCache
from planner_sync.core.clock import Clock
from planner_sync.core.models import CacheEntry, Page, Record
from planner_sync.core.utils import build_cache_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MergeResult:
    records: list[Record]
    next_cursor: Optional[str]
    has_more: bool


def dedupe_records(records: Iterable[Record]) -> list[Record]:
    """Deduplicate by id. The last occurrence supplies the content, the first keeps its position."""
    merged: dict[str, Record] = {}
    for record in records:
        merged[record.id] = record
    return list(merged.values())


def merge(existing: Iterable[Record], page: Page) -> MergeResult:
    """
    Merge a fetched page into already known records.

    Incoming records win over existing ones with the same id. Pagination state comes
    from the page unconditionally; an empty page with `has_more=False` is a normal
    end of stream. Merging the same page twice yields the same result as once.
    """
    return MergeResult(
        records=dedupe_records([*existing, *page.records]),
        next_cursor=page.cursor,
        has_more=page.has_more,
    )


class Reconciler:
    """The only writer into the Local Cache."""

    def __init__(self, cache: LocalCache, clock: Clock) -> None:
        self._cache = cache
        self._clock = clock

    @property
    def cache(self) -> LocalCache:
        return self._cache

    def apply_page(self, cache_key: str, existing: Iterable[Record], page: Page) -> CacheEntry:
        result = merge(existing, page)
        entry = CacheEntry(
            resource_key=cache_key,
            records=[Record(id=r.id, fields=dict(r.fields)) for r in result.records],
            cursor=result.next_cursor,
            has_more=result.has_more,
            fetched_at=self._clock.time(),
        )
        self._cache.put(cache_key, entry)
        logger.debug(
            "Page reconciled into local cache. cache_key=%s incoming=%d total=%d has_more=%s",
            cache_key,
            len(page.records),
            len(entry.records),
            entry.has_more,
        )
        return entry

    def upsert(self, resource: str, record: Record) -> int:
        """
        Write a confirmed record into cached views of `resource`.

        Entries that already list the id are updated in place; a new id is added to
        the unfiltered entry only, since its membership in filtered views is unknown.
        Freshness timestamps are kept. Returns the number of entries touched.
        """
        touched = 0
        unfiltered_key = build_cache_key(resource)
        for cache_key in self._cache.keys_for_resource(resource):
            entry = self._cache.get(cache_key)
            if entry is None:
                continue
            confirmed = Record(id=record.id, fields=dict(record.fields))
            if any(r.id == record.id for r in entry.records):
                entry.records = dedupe_records([*entry.records, confirmed])
            elif cache_key == unfiltered_key:
                entry.records = [confirmed, *entry.records]
            else:
                continue
            self._cache.put(cache_key, entry)
            touched += 1
        return touched

    def remove(self, resource: str, record_id: str) -> int:
        touched = 0
        for cache_key in self._cache.keys_for_resource(resource):
            entry = self._cache.get(cache_key)
            if entry is None:
                continue
            remaining = [r for r in entry.records if r.id != record_id]
            if len(remaining) == len(entry.records):
                continue
            entry.records = remaining
            self._cache.put(cache_key, entry)
            touched += 1
        if touched:
            logger.debug("Record removed from local cache. resource=%s record_id=%s entries=%d", resource, record_id, touched)
        return touched
