from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional

from planner_sync.core.clock import Clock, TimerHandle
from planner_sync.core.errors import SyncClosedError
from planner_sync.core.models import PendingEdit

logger = logging.getLogger(__name__)

SchedulerState = Literal["idle", "armed"]
Dispatch = Callable[[list[PendingEdit]], Awaitable[None]]


class DebouncedScheduler:
    """
    Coalesces bursts of edits into one deferred dispatch.

    Idle until the first edit arrives; Armed while edits are pending. Every new edit
    restarts the timer at the full delay. When the timer fires the whole batch is
    handed to `dispatch` and the scheduler is Idle again. Batches are dispatched one
    at a time, so an older batch always completes before a newer one starts.
    """

    def __init__(self, *, delay_seconds: float, dispatch: Dispatch, clock: Clock, name: str = "") -> None:
        self._delay_seconds = delay_seconds
        self._dispatch = dispatch
        self._clock = clock
        self._name = name
        self._pending: dict[str, PendingEdit] = {}
        self._timer: Optional[TimerHandle] = None
        self._generation = 0
        self._dispatch_lock = asyncio.Lock()
        self._in_flight: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def state(self) -> SchedulerState:
        return "armed" if self._pending else "idle"

    @property
    def delay_seconds(self) -> float:
        return self._delay_seconds

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def busy(self) -> bool:
        return bool(self._pending) or bool(self._in_flight)

    def pending(self, record_id: str) -> Optional[PendingEdit]:
        return self._pending.get(record_id)

    def pending_edits(self) -> list[PendingEdit]:
        return list(self._pending.values())

    def submit(self, record_id: str, fields: Mapping[str, Any]) -> PendingEdit:
        if self._closed:
            raise SyncClosedError(self._name or "scheduler")

        action = "reset" if self._pending else "start"
        edit = self._pending.get(record_id)
        if edit is None:
            edit = PendingEdit(record_id=record_id, fields=dict(fields), armed_at=self._clock.time())
            self._pending[record_id] = edit
        else:
            edit.fields.update(fields)
            edit.armed_at = self._clock.time()
        self._arm(self._delay_seconds, action=action)
        return edit

    def retry(self, edit: PendingEdit, *, delay_seconds: float) -> None:
        """Queue a failed edit again. Fields of a newer pending edit for the same record take precedence."""
        existing = self._pending.get(edit.record_id)
        if existing is None:
            edit.armed_at = self._clock.time()
            self._pending[edit.record_id] = edit
        else:
            merged = dict(edit.fields)
            merged.update(existing.fields)
            existing.fields = merged
            existing.attempts = max(existing.attempts, edit.attempts)
        self._arm(delay_seconds, action="retry")

    def discard(self, record_id: str) -> Optional[PendingEdit]:
        edit = self._pending.pop(record_id, None)
        if not self._pending:
            self._cancel_timer()
        return edit

    async def flush(self) -> None:
        """Dispatch everything pending now and wait until all dispatches have finished."""
        self._cancel_timer()
        batch = self._take()
        if batch:
            await self._run(batch, reason="flush")
        await self.drain()

    async def drain(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        while self._pending or self._in_flight:
            await self.flush()

    def _arm(self, delay_seconds: float, *, action: str) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._generation += 1
        generation = self._generation
        self._timer = self._clock.call_later(delay_seconds, lambda: self._on_timer(generation))
        logger.debug(
            "Waiting to persist edits. scheduler=%s pending=%d wait_seconds=%s action=%s generation=%s",
            self._name,
            len(self._pending),
            delay_seconds,
            action,
            generation,
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._generation += 1

    def _take(self) -> list[PendingEdit]:
        batch = list(self._pending.values())
        self._pending = {}
        return batch

    def _on_timer(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._timer = None
        batch = self._take()
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self._run(batch, reason="timer"))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run(self, batch: list[PendingEdit], *, reason: str) -> None:
        async with self._dispatch_lock:
            logger.debug(
                "Persisting edits. scheduler=%s records=%s reason=%s",
                self._name,
                [edit.record_id for edit in batch],
                reason,
            )
            try:
                await self._dispatch(batch)
            except Exception:
                logger.exception(
                    "Failed to persist edits. scheduler=%s records=%s",
                    self._name,
                    [edit.record_id for edit in batch],
                )
