"""Reconciliation, debounced persistence and optimistic updates."""

from planner_sync.sync.client import SyncClient
from planner_sync.sync.mutator import FailurePolicy, OptimisticMutator
from planner_sync.sync.reconciler import MergeResult, Reconciler, merge
from planner_sync.sync.resource_sync import ResourceSync
from planner_sync.sync.scheduler import DebouncedScheduler
from planner_sync.sync.view import RecordView

__all__ = [
    "DebouncedScheduler",
    "FailurePolicy",
    "MergeResult",
    "OptimisticMutator",
    "RecordView",
    "Reconciler",
    "ResourceSync",
    "SyncClient",
    "merge",
]
