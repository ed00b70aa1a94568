from __future__ import annotations

import logging
from typing import Optional

from planner_sync.cache.local_cache import LocalCache
from planner_sync.cache.storage import JsonFileStorage, KeyValueStorage
from planner_sync.config.models import AppConfig
from planner_sync.core.clock import Clock, LoopClock
from planner_sync.core.models import ResourceKind, SessionIdentity
from planner_sync.store.http import HttpRemoteStore
from planner_sync.store.interfaces import RemoteStore
from planner_sync.store.resources import get_resource
from planner_sync.sync.resource_sync import ResourceSync

logger = logging.getLogger(__name__)


class SyncClient:
    """
    Wires the Remote Store Client, the Local Cache and one ResourceSync per resource.

    `store`, `storage` and `clock` default to the HTTP client, the JSON file cache
    and the event loop clock; tests pass in-memory replacements.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: Optional[RemoteStore] = None,
        storage: Optional[KeyValueStorage] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._identity = SessionIdentity(user_id=config.identity.user_id)
        self._clock = clock or LoopClock()
        self._store = store or HttpRemoteStore(config.store, self._identity)
        self._cache = LocalCache(
            storage or JsonFileStorage(config.cache.path),
            ttl_seconds=config.cache.ttl_seconds,
            clock=self._clock,
        )
        self._syncs: dict[str, ResourceSync] = {}

    @property
    def identity(self) -> SessionIdentity:
        return self._identity

    @property
    def cache(self) -> LocalCache:
        return self._cache

    @property
    def store(self) -> RemoteStore:
        return self._store

    def resource(self, kind: ResourceKind) -> ResourceSync:
        spec = get_resource(kind)
        sync = self._syncs.get(spec.kind)
        if sync is None or sync.closed:
            sync = ResourceSync(
                spec.kind,
                store=self._store,
                cache=self._cache,
                settings=self._config.sync,
                identity=self._identity,
                clock=self._clock,
            )
            self._syncs[spec.kind] = sync
        return sync

    async def close(self) -> None:
        for kind, sync in list(self._syncs.items()):
            try:
                await sync.close()
            except Exception:
                logger.exception("Failed to close resource sync. resource=%s", kind)
        self._syncs.clear()
        await self._store.close()

    async def __aenter__(self) -> SyncClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
