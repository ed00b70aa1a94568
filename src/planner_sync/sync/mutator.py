from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from planner_sync.core.clock import Clock
from planner_sync.core.errors import SyncClosedError
from planner_sync.core.models import Notice, NoticeLevel, PendingEdit, Record, ResourceKind
from planner_sync.core.utils import new_placeholder_id
from planner_sync.store.errors import ServiceUnavailableError, StoreError, TransientStoreError
from planner_sync.store.interfaces import RemoteStore
from planner_sync.sync.reconciler import Reconciler
from planner_sync.sync.scheduler import DebouncedScheduler
from planner_sync.sync.view import RecordView

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FailurePolicy:
    """
    What happens when a save does not go through.

    A new record that fails to save stays visible as unconfirmed
    (`keep_unconfirmed_creates`); a failed edit to a saved record always reverts to
    the last saved value. A "temporarily unavailable" answer is retried up to
    `unavailable_retries` times after `retry_delay_seconds`; `retry_transient`
    extends one such retry to plain network failures.
    """

    keep_unconfirmed_creates: bool = True
    unavailable_retries: int = 1
    retry_delay_seconds: float = 5.0
    retry_transient: bool = False


class OptimisticMutator:
    def __init__(
        self,
        *,
        resource: ResourceKind,
        store: RemoteStore,
        view: RecordView,
        reconciler: Reconciler,
        clock: Clock,
        delay_seconds: float,
        policy: FailurePolicy = FailurePolicy(),
        notices: Optional[list[Notice]] = None,
        id_factory: Callable[[], str] = new_placeholder_id,
    ) -> None:
        self._resource = resource
        self._store = store
        self._view = view
        self._reconciler = reconciler
        self._clock = clock
        self._policy = policy
        self._id_factory = id_factory
        self.notices: list[Notice] = notices if notices is not None else []

        self._scheduler = DebouncedScheduler(
            delay_seconds=delay_seconds,
            dispatch=self._confirm_batch,
            clock=clock,
            name=resource,
        )
        self._authoritative: dict[str, Record] = {}
        self._confirmed_at: dict[str, float] = {}
        self._aliases: dict[str, str] = {}
        self._removed: set[str] = set()
        self._closed = False

    @property
    def scheduler(self) -> DebouncedScheduler:
        return self._scheduler

    @property
    def has_unsaved_changes(self) -> bool:
        return self._scheduler.busy or any(not r.confirmed for r in self._view.records())

    def resolve(self, record_id: str) -> str:
        return self._aliases.get(record_id, record_id)

    def remember(self, records: Iterable[Record]) -> None:
        """Record server-provided versions as the values to revert to on a failed edit."""
        for record in records:
            self._removed.discard(record.id)
            self._authoritative[record.id] = Record(id=record.id, fields=dict(record.fields))

    def confirmed_since(self, since: float) -> dict[str, Record]:
        return {
            record_id: record
            for record_id, record in self._authoritative.items()
            if self._confirmed_at.get(record_id, float("-inf")) >= since
        }

    def overlay_pending(self) -> None:
        """Re-apply not yet persisted edits on top of freshly shown server records."""
        for edit in self._scheduler.pending_edits():
            record_id = self.resolve(edit.record_id)
            current = self._view.get(record_id)
            if current is not None and current.confirmed:
                self._view.put(current.with_fields(edit.fields))

    def apply(self, record_id: Optional[str], fields: Mapping[str, Any]) -> str:
        """
        Show `fields` immediately and schedule the save.

        `None` or an id not currently shown creates a placeholder; the returned id is
        the one the record is shown under right now.
        """
        if self._closed:
            raise SyncClosedError(self._resource)

        resolved = self.resolve(record_id) if record_id is not None else None
        current = self._view.get(resolved) if resolved is not None else None
        if current is None:
            placeholder_id = resolved or self._id_factory()
            self._view.prepend(Record(id=placeholder_id, fields=dict(fields), confirmed=False))
            logger.info("Optimistic record created. resource=%s placeholder_id=%s", self._resource, placeholder_id)
            self._scheduler.submit(placeholder_id, fields)
            return placeholder_id

        self._view.put(current.with_fields(dict(fields)))
        self._scheduler.submit(current.id, fields)
        return current.id

    def retry_unconfirmed(self) -> list[str]:
        placeholder_ids = [r.id for r in self._view.records() if not r.confirmed]
        for placeholder_id in placeholder_ids:
            self._scheduler.submit(placeholder_id, {})
        if placeholder_ids:
            logger.info(
                "Retrying unconfirmed records. resource=%s count=%d",
                self._resource,
                len(placeholder_ids),
            )
        return placeholder_ids

    async def remove(self, record_id: str) -> bool:
        if self._closed:
            raise SyncClosedError(self._resource)

        resolved = self.resolve(record_id)
        keys = [resolved, *(alias for alias, target in self._aliases.items() if target == resolved)]
        withheld = [edit for edit in (self._scheduler.discard(key) for key in keys) if edit is not None]

        current = self._view.get(resolved)
        if current is not None and not current.confirmed:
            self._view.remove(resolved)
            logger.info("Unconfirmed record dropped locally. resource=%s record_id=%s", self._resource, resolved)
            return True

        try:
            existed = await self._store.delete(self._resource, resolved)
        except StoreError as e:
            # The record stays, so its unsaved edits are queued again.
            for edit in withheld:
                self._scheduler.retry(edit, delay_seconds=self._scheduler.delay_seconds)
            logger.warning(
                "Deleting a record failed. resource=%s record_id=%s error=%s",
                self._resource,
                resolved,
                e,
            )
            self._notify("error", "Failed to delete. Please try again later.", resolved)
            return False

        if not existed:
            logger.info("Record was already gone on the server. resource=%s record_id=%s", self._resource, resolved)
        self._view.remove(resolved)
        self._authoritative.pop(resolved, None)
        self._removed.add(resolved)
        self._reconciler.remove(self._resource, resolved)
        return True

    async def flush(self) -> None:
        await self._scheduler.flush()

    async def close(self) -> None:
        await self._scheduler.close()
        self._closed = True

    async def _confirm_batch(self, batch: list[PendingEdit]) -> None:
        # No Data Store route accepts bulk writes; records are saved independently.
        await asyncio.gather(*(self._confirm(edit) for edit in batch))

    async def _confirm(self, edit: PendingEdit) -> None:
        record_id = self.resolve(edit.record_id)
        visible = self._view.get(record_id)
        if visible is None:
            logger.info(
                "Dropping edit for a record that is no longer shown. resource=%s record_id=%s",
                self._resource,
                record_id,
            )
            return

        is_create = not visible.confirmed
        if not is_create and not edit.fields:
            return
        snapshot = Record(id=visible.id, fields=dict(visible.fields))

        try:
            if is_create:
                confirmed = await self._store.create(self._resource, snapshot.fields)
            else:
                confirmed = await self._store.update(self._resource, record_id, edit.fields)
        except ServiceUnavailableError as e:
            if edit.attempts < self._policy.unavailable_retries:
                self._schedule_retry(edit, e)
                return
            self._on_failure(record_id, is_create=is_create, error=e)
            return
        except TransientStoreError as e:
            if self._policy.retry_transient and edit.attempts < 1:
                self._schedule_retry(edit, e)
                return
            self._on_failure(record_id, is_create=is_create, error=e)
            return
        except StoreError as e:
            self._on_failure(record_id, is_create=is_create, error=e)
            return

        if is_create:
            await self._on_created(record_id, confirmed)
        else:
            self._on_updated(snapshot, confirmed)

    def _schedule_retry(self, edit: PendingEdit, error: StoreError) -> None:
        edit.attempts += 1
        logger.warning(
            "Data Store did not accept the save, retrying later. resource=%s record_id=%s attempt=%s delay_seconds=%s error=%s",
            self._resource,
            edit.record_id,
            edit.attempts,
            self._policy.retry_delay_seconds,
            error,
        )
        self._scheduler.retry(edit, delay_seconds=self._policy.retry_delay_seconds)

    def _with_pending(self, record: Record, *record_ids: str) -> Record:
        shown = record
        for record_id in record_ids:
            pending = self._scheduler.pending(record_id)
            if pending is not None:
                shown = shown.with_fields(pending.fields)
        return shown

    async def _on_created(self, placeholder_id: str, confirmed: Record) -> None:
        authoritative = Record(id=confirmed.id, fields=dict(confirmed.fields))
        self._aliases[placeholder_id] = authoritative.id
        self._removed.discard(authoritative.id)
        self._authoritative[authoritative.id] = authoritative
        self._confirmed_at[authoritative.id] = self._clock.time()

        if placeholder_id not in self._view:
            # Removed locally while the create was in flight.
            logger.info(
                "Created record was removed before confirmation, deleting it. resource=%s record_id=%s",
                self._resource,
                authoritative.id,
            )
            try:
                await self._store.delete(self._resource, authoritative.id)
            except StoreError as e:
                logger.warning(
                    "Deleting an orphaned record failed. resource=%s record_id=%s error=%s",
                    self._resource,
                    authoritative.id,
                    e,
                )
            return

        self._view.swap(placeholder_id, self._with_pending(authoritative, placeholder_id, authoritative.id))
        self._reconciler.upsert(self._resource, authoritative)
        logger.info(
            "Placeholder confirmed. resource=%s placeholder_id=%s record_id=%s",
            self._resource,
            placeholder_id,
            authoritative.id,
        )

    def _on_updated(self, snapshot: Record, confirmed: Record) -> None:
        if snapshot.id in self._removed:
            logger.info(
                "Ignoring confirmation for a record deleted meanwhile. resource=%s record_id=%s",
                self._resource,
                snapshot.id,
            )
            return
        base = self._authoritative.get(snapshot.id, snapshot)
        authoritative = Record(id=snapshot.id, fields={**base.fields, **confirmed.fields})
        self._authoritative[authoritative.id] = authoritative
        self._confirmed_at[authoritative.id] = self._clock.time()

        if authoritative.id in self._view:
            self._view.put(self._with_pending(authoritative, authoritative.id))
        self._reconciler.upsert(self._resource, authoritative)
        logger.debug("Edit confirmed. resource=%s record_id=%s", self._resource, authoritative.id)

    def _on_failure(self, record_id: str, *, is_create: bool, error: StoreError) -> None:
        if is_create:
            if self._policy.keep_unconfirmed_creates:
                logger.warning(
                    "Saving a new record failed, keeping it locally as unconfirmed. resource=%s record_id=%s error=%s",
                    self._resource,
                    record_id,
                    error,
                )
                self._notify("warning", "Saved on this device only. It will be sent again when you reconnect.", record_id)
            else:
                self._view.remove(record_id)
                logger.warning(
                    "Saving a new record failed, discarding it. resource=%s record_id=%s error=%s",
                    self._resource,
                    record_id,
                    error,
                )
                self._notify("error", "Failed to save. Please try again later.", record_id)
            return

        if record_id in self._removed:
            logger.info("Edit to a deleted record failed. resource=%s record_id=%s error=%s", self._resource, record_id, error)
            return
        prior = self._authoritative.get(record_id)
        if prior is not None and record_id in self._view:
            self._view.put(self._with_pending(prior, record_id))
        logger.warning(
            "Saving an edit failed, showing the last saved value. resource=%s record_id=%s reverted=%s error=%s",
            self._resource,
            record_id,
            prior is not None,
            error,
        )
        self._notify("error", "Failed to save your changes. Please try again later.", record_id)

    def _notify(self, level: NoticeLevel, message: str, record_id: Optional[str]) -> None:
        self.notices.append(Notice(level=level, message=message, record_id=record_id))
