"""Shared data model, clock and error types."""

from planner_sync.core.clock import Clock, LoopClock, ManualClock
from planner_sync.core.errors import NotAuthenticatedError, SyncClosedError, SyncError
from planner_sync.core.models import (
    RESOURCE_KINDS,
    CacheEntry,
    Notice,
    Page,
    PendingEdit,
    Record,
    ResourceKind,
    SessionIdentity,
)

__all__ = [
    "CacheEntry",
    "Clock",
    "LoopClock",
    "ManualClock",
    "NotAuthenticatedError",
    "Notice",
    "Page",
    "PendingEdit",
    "RESOURCE_KINDS",
    "Record",
    "ResourceKind",
    "SessionIdentity",
    "SyncClosedError",
    "SyncError",
]
