from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from planner_sync.cache.io import atomic_write_json

logger = logging.getLogger(__name__)


class KeyValueStorage:
    """
    Durable string key-value storage with synchronous access.

    Mirrors browser local storage: no transactions, every write is immediately visible.
    """

    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> list[str]:
        raise NotImplementedError


class MemoryStorage(KeyValueStorage):
    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class JsonFileStorage(KeyValueStorage):
    """
    All items in one JSON object on disk, rewritten atomically on each change.

    An unreadable file is logged and treated as empty; it is replaced on the next write.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._items: Optional[dict[str, str]] = None

    def _load(self) -> dict[str, str]:
        if self._items is not None:
            return self._items
        items: dict[str, str] = {}
        if self._path.exists():
            try:
                payload = json.loads(self._path.read_text(encoding="utf-8"))
                if not isinstance(payload, dict):
                    raise ValueError("Top-level storage payload must be an object")
                items = {str(k): v for k, v in payload.items() if isinstance(v, str)}
            except (OSError, ValueError):
                logger.warning("Local cache storage unreadable, starting fresh. path=%s", self._path, exc_info=True)
                items = {}
        self._items = items
        return items

    def _persist(self) -> None:
        atomic_write_json(self._path, self._load())

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        self._load()[key] = value
        self._persist()

    def remove_item(self, key: str) -> None:
        items = self._load()
        if items.pop(key, None) is not None:
            self._persist()

    def keys(self) -> list[str]:
        return list(self._load())
