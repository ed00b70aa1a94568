"""Remote Store Client contracts and implementations."""

from planner_sync.store.errors import (
    MalformedResponseError,
    ServiceUnavailableError,
    StoreError,
    StoreRequestError,
    TransientStoreError,
)
from planner_sync.store.http import HttpRemoteStore
from planner_sync.store.interfaces import RemoteStore
from planner_sync.store.memory import InMemoryRemoteStore
from planner_sync.store.resources import RESOURCES, ResourceSpec, get_resource

__all__ = [
    "HttpRemoteStore",
    "InMemoryRemoteStore",
    "MalformedResponseError",
    "RESOURCES",
    "RemoteStore",
    "ResourceSpec",
    "ServiceUnavailableError",
    "StoreError",
    "StoreRequestError",
    "TransientStoreError",
    "get_resource",
]
