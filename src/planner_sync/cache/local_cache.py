from __future__ import annotations

import logging
from typing import Optional

from planner_sync.cache.io import decode_entry, encode_entry
from planner_sync.cache.storage import KeyValueStorage
from planner_sync.core.clock import Clock, LoopClock
from planner_sync.core.models import CacheEntry
from planner_sync.core.utils import resource_of_cache_key

logger = logging.getLogger(__name__)

_STORAGE_PREFIX = "planner-sync:"


class LocalCache:
    """
    TTL-bounded cache of the last known server view per resource and filter set.

    `get` never serves an entry older than the TTL. Entries are decoded on every
    read, so callers always receive a private copy.
    """

    def __init__(self, storage: KeyValueStorage, *, ttl_seconds: float = 300.0, clock: Optional[Clock] = None) -> None:
        self._storage = storage
        self._ttl_seconds = ttl_seconds
        self._clock = clock or LoopClock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        storage_key = _STORAGE_PREFIX + cache_key
        raw = self._storage.get_item(storage_key)
        if raw is None:
            return None
        try:
            entry = decode_entry(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding corrupt local cache entry. cache_key=%s", cache_key, exc_info=True)
            self._storage.remove_item(storage_key)
            return None

        age = self._clock.time() - entry.fetched_at
        if age > self._ttl_seconds:
            logger.debug("Local cache entry is stale. cache_key=%s age_seconds=%.3f", cache_key, age)
            return None
        return entry

    def put(self, cache_key: str, entry: CacheEntry) -> None:
        if entry.resource_key != cache_key:
            raise ValueError(f"Cache entry key mismatch. cache_key={cache_key} entry_key={entry.resource_key}")
        self._storage.set_item(_STORAGE_PREFIX + cache_key, encode_entry(entry))

    def invalidate(self, cache_key: str) -> None:
        self._storage.remove_item(_STORAGE_PREFIX + cache_key)

    def keys_for_resource(self, resource: str) -> list[str]:
        keys = []
        for storage_key in self._storage.keys():
            if not storage_key.startswith(_STORAGE_PREFIX):
                continue
            cache_key = storage_key[len(_STORAGE_PREFIX) :]
            if resource_of_cache_key(cache_key) == resource:
                keys.append(cache_key)
        return sorted(keys)

    def invalidate_resource(self, resource: str) -> int:
        keys = self.keys_for_resource(resource)
        for cache_key in keys:
            self.invalidate(cache_key)
        if keys:
            logger.info("Local cache invalidated. resource=%s entries=%d", resource, len(keys))
        return len(keys)
