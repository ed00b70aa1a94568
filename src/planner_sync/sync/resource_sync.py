from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from planner_sync.cache.local_cache import LocalCache
from planner_sync.config.models import SyncSettings
from planner_sync.core.clock import Clock, LoopClock
from planner_sync.core.errors import NotAuthenticatedError, SyncClosedError
from planner_sync.core.models import CacheEntry, Notice, Page, Record, ResourceKind, SessionIdentity
from planner_sync.core.utils import build_cache_key, new_placeholder_id, normalize_filters
from planner_sync.store.errors import MalformedResponseError, StoreError
from planner_sync.store.interfaces import RemoteStore
from planner_sync.store.resources import get_resource
from planner_sync.sync.mutator import FailurePolicy, OptimisticMutator
from planner_sync.sync.reconciler import Reconciler
from planner_sync.sync.view import RecordView

logger = logging.getLogger(__name__)


class ResourceSync:
    """
    Keeps one resource's displayed records in sync with the Data Store.

    Reads are served from the Local Cache while fresh and fetched otherwise; a failed
    read leaves the current records in place and is reported through `last_error`
    instead of raising. Writes are optimistic: `create` and `edit` update `records`
    immediately and are persisted after the debounce delay. Responses that arrive
    after `close()` or after a newer `load()` are discarded.
    """

    def __init__(
        self,
        resource: ResourceKind,
        *,
        store: RemoteStore,
        cache: LocalCache,
        settings: SyncSettings,
        identity: SessionIdentity,
        clock: Optional[Clock] = None,
        id_factory: Callable[[], str] = new_placeholder_id,
    ) -> None:
        self._spec = get_resource(resource)
        self._store = store
        self._cache = cache
        self._identity = identity
        self._clock = clock or LoopClock()
        self._protect_confirmed_edits = settings.protect_confirmed_edits

        self._view = RecordView()
        self._notices: list[Notice] = []
        self._reconciler = Reconciler(cache, self._clock)
        self._mutator = OptimisticMutator(
            resource=self._spec.kind,
            store=store,
            view=self._view,
            reconciler=self._reconciler,
            clock=self._clock,
            delay_seconds=settings.autosave_debounce_seconds if self._spec.autosave else settings.edit_debounce_seconds,
            policy=FailurePolicy(
                unavailable_retries=settings.unavailable_retries,
                retry_delay_seconds=settings.retry_delay_seconds,
                retry_transient=self._spec.kind in settings.retry_transient_resources,
            ),
            notices=self._notices,
            id_factory=id_factory,
        )

        self._filters: dict[str, str] = {}
        self._cache_key = build_cache_key(self._spec.kind)
        self._cursor: Optional[str] = None
        self._has_more = False
        self._total: Optional[int] = None
        self._last_error: Optional[StoreError] = None
        self._generation = 0
        self._closed = False

    @property
    def resource(self) -> ResourceKind:
        return self._spec.kind

    @property
    def records(self) -> list[Record]:
        return self._view.records()

    @property
    def notices(self) -> list[Notice]:
        return list(self._notices)

    @property
    def filters(self) -> dict[str, str]:
        return dict(self._filters)

    @property
    def cache_key(self) -> str:
        return self._cache_key

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def total(self) -> Optional[int]:
        return self._total

    @property
    def last_error(self) -> Optional[StoreError]:
        return self._last_error

    @property
    def has_unsaved_changes(self) -> bool:
        return self._mutator.has_unsaved_changes

    @property
    def mutator(self) -> OptimisticMutator:
        return self._mutator

    @property
    def closed(self) -> bool:
        return self._closed

    async def load(self, filters: Optional[Mapping[str, object]] = None, *, force: bool = False) -> list[Record]:
        """Show the first page for `filters`, from the Local Cache when it is still fresh."""
        self._ensure_open()
        normalized = normalize_filters(filters)
        self._spec.validate_filters(normalized)

        # A newer load supersedes any fetch still in flight.
        self._generation += 1
        if normalized != self._filters:
            self._view.replace_all([])
            self._cursor = None
            self._has_more = False
            self._total = None
        self._filters = normalized
        self._cache_key = build_cache_key(self._spec.kind, normalized)

        if not self._identity.is_authenticated:
            logger.info("No authenticated session, showing no records. resource=%s", self._spec.kind)
            self._view.replace_all([])
            return self.records

        if not force:
            entry = self._cache.get(self._cache_key)
            if entry is not None:
                logger.debug("Serving records from local cache. cache_key=%s", self._cache_key)
                self._show(entry)
                return self.records

        page = await self._fetch(cursor=None)
        if page is not None:
            self._total = page.total
            self._show(self._reconciler.apply_page(self._cache_key, [], page))
        return self.records

    async def load_more(self) -> list[Record]:
        self._ensure_open()
        if not self._has_more or not self._identity.is_authenticated:
            return self.records
        if self._cursor is None:
            logger.warning(
                "Server reported more records without a cursor, not fetching. resource=%s cache_key=%s",
                self._spec.kind,
                self._cache_key,
            )
            return self.records

        page = await self._fetch(cursor=self._cursor)
        if page is None:
            return self.records

        entry = self._cache.get(self._cache_key)
        existing = entry.records if entry is not None else [r for r in self._view.records() if r.confirmed]
        if page.total is not None:
            self._total = page.total
        self._show(self._reconciler.apply_page(self._cache_key, existing, page))
        return self.records

    async def refresh(self) -> list[Record]:
        return await self.load(self._filters, force=True)

    def create(self, fields: Mapping[str, Any]) -> str:
        self._ensure_writable()
        return self._mutator.apply(None, fields)

    def edit(self, record_id: Optional[str], fields: Mapping[str, Any]) -> str:
        """
        Change fields of a shown record. Returns the id it is shown under.

        For the profile the record id defaults to the session user.
        """
        self._ensure_writable()
        if record_id is None:
            if not self._spec.singleton:
                raise ValueError(f"A record id is required to edit {self._spec.kind}")
            record_id = self._identity.user_id
        return self._mutator.apply(record_id, fields)

    async def remove(self, record_id: str) -> bool:
        self._ensure_writable()
        return await self._mutator.remove(record_id)

    async def flush(self) -> None:
        await self._mutator.flush()

    async def retry_unconfirmed(self) -> list[str]:
        """Send records that only exist on this device again and wait for the outcome."""
        self._ensure_writable()
        placeholder_ids = self._mutator.retry_unconfirmed()
        await self._mutator.flush()
        return placeholder_ids

    def dismiss_notice(self, notice: Notice) -> None:
        if notice in self._notices:
            self._notices.remove(notice)

    async def close(self) -> None:
        """Persist pending edits, then ignore any response still on its way."""
        if self._closed:
            return
        await self._mutator.close()
        self._closed = True
        self._generation += 1
        logger.debug("Resource sync closed. resource=%s", self._spec.kind)

    async def __aenter__(self) -> ResourceSync:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise SyncClosedError(self._spec.kind)

    def _ensure_writable(self) -> None:
        self._ensure_open()
        if not self._identity.is_authenticated:
            self._notices.append(Notice(level="error", message=f"You need to be logged in to update {self._spec.kind}."))
            raise NotAuthenticatedError(self._spec.kind)

    async def _fetch(self, *, cursor: Optional[str]) -> Optional[Page]:
        generation = self._generation
        requested_at = self._clock.time()
        try:
            page = await self._store.fetch_page(self._spec.kind, self._filters, cursor)
        except MalformedResponseError as e:
            if generation != self._generation:
                return None
            logger.warning("Malformed page response, showing no data. cache_key=%s error=%s", self._cache_key, e)
            self._last_error = e
            self._view.replace_all([])
            self._has_more = False
            self._cursor = None
            return None
        except StoreError as e:
            if generation != self._generation:
                return None
            logger.warning("Fetching records failed. cache_key=%s cursor=%s error=%s", self._cache_key, cursor, e)
            self._last_error = e
            return None

        if generation != self._generation:
            logger.debug("Discarding superseded page response. cache_key=%s cursor=%s", self._cache_key, cursor)
            return None
        self._last_error = None
        if self._protect_confirmed_edits:
            page = self._keep_confirmed_edits(page, requested_at)
        return page

    def _keep_confirmed_edits(self, page: Page, requested_at: float) -> Page:
        confirmed = self._mutator.confirmed_since(requested_at)
        if not confirmed:
            return page
        kept = [confirmed.get(r.id, r) for r in page.records]
        logger.debug(
            "Kept locally confirmed edits over an older page. cache_key=%s records=%s",
            self._cache_key,
            [r.id for r in page.records if r.id in confirmed],
        )
        return Page(records=kept, cursor=page.cursor, has_more=page.has_more, total=page.total)

    def _show(self, entry: CacheEntry) -> None:
        self._cursor = entry.cursor
        self._has_more = entry.has_more
        self._mutator.remember(entry.records)
        self._view.replace_all(entry.records)
        self._mutator.overlay_pending()
