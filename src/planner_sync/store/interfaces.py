from __future__ import annotations

from typing import Any, Mapping, Optional

from planner_sync.core.models import Page, Record, ResourceKind


class RemoteStore:
    """
    Stateless access to the Data Store, one resource at a time.

    Every call may raise a `planner_sync.store.errors.StoreError`. Callers decide
    whether to retry.
    """

    async def fetch_page(
        self,
        resource: ResourceKind,
        filters: Optional[Mapping[str, str]] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        """Return one page of records. Pagination state in the page is authoritative."""
        raise NotImplementedError

    async def create(self, resource: ResourceKind, fields: Mapping[str, Any]) -> Record:
        """Create a record and return it under its server-assigned id."""
        raise NotImplementedError

    async def update(self, resource: ResourceKind, record_id: str, fields: Mapping[str, Any]) -> Record:
        """Apply a partial update and return the server's view of the written fields."""
        raise NotImplementedError

    async def delete(self, resource: ResourceKind, record_id: str) -> bool:
        """Delete a record. Returns False when the server no longer knows the id."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
