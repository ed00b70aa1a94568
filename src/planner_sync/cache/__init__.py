"""Local Cache and its durable storage backends."""

from planner_sync.cache.local_cache import LocalCache
from planner_sync.cache.storage import JsonFileStorage, KeyValueStorage, MemoryStorage

__all__ = ["JsonFileStorage", "KeyValueStorage", "LocalCache", "MemoryStorage"]
