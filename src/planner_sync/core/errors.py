from __future__ import annotations


class SyncError(Exception):
    """Base class for errors raised by the sync layer."""


class NotAuthenticatedError(SyncError):
    def __init__(self, resource: str) -> None:
        super().__init__(f"You need to be logged in to change {resource}.")
        self.resource = resource


class SyncClosedError(SyncError):
    def __init__(self, resource: str) -> None:
        super().__init__(f"Sync for {resource} is closed.")
        self.resource = resource
