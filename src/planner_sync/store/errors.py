from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """A Data Store call did not complete successfully."""

    def __init__(self, message: str, *, resource: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.resource = resource
        self.status = status


class TransientStoreError(StoreError):
    """Network failure, missed deadline, or a retryable server status."""


class ServiceUnavailableError(TransientStoreError):
    """The server explicitly reported that it is temporarily unavailable (HTTP 503)."""

    def __init__(
        self,
        message: str,
        *,
        resource: str = "",
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, resource=resource, status=503)
        self.retry_after = retry_after


class StoreRequestError(StoreError):
    """The server rejected the request (non-retryable status)."""


class MalformedResponseError(StoreError):
    """The response body was absent, not JSON, or did not match the resource schema."""
