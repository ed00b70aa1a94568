from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

import aiohttp

from planner_sync.config.models import StoreSettings
from planner_sync.core.models import Page, Record, ResourceKind, SessionIdentity
from planner_sync.core.utils import normalize_filters
from planner_sync.store.errors import (
    MalformedResponseError,
    ServiceUnavailableError,
    StoreRequestError,
    TransientStoreError,
)
from planner_sync.store.interfaces import RemoteStore
from planner_sync.store.resources import ResourceSpec, Route, get_resource

logger = logging.getLogger(__name__)


def _parse_retry_after(header_value: Optional[str], payload: Any) -> Optional[float]:
    candidates: list[Any] = [header_value]
    if isinstance(payload, dict):
        candidates.append(payload.get("retryAfter"))
    for value in candidates:
        if value is None:
            continue
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            continue
        if seconds >= 0:
            return seconds
    return None


def _error_message(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error", "details"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return f"HTTP {status}: {value.strip()}"
    return f"HTTP {status}"


class HttpRemoteStore(RemoteStore):
    """RemoteStore backed by the Data Store's JSON REST handlers."""

    def __init__(
        self,
        settings: StoreSettings,
        identity: SessionIdentity,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._settings = settings
        self._identity = identity
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> HttpRemoteStore:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self._session is not None and not self._session.closed:
            return
        timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout_seconds)
        self._session = aiohttp.ClientSession(timeout=timeout)
        self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Cache-Control": "no-cache", "Accept": "application/json"}
        token = self._settings.auth_token.strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _url(self, route: Route, record_id: Optional[str]) -> str:
        path = route.path
        if "{id}" in path:
            if record_id is None:
                raise ValueError(f"Route requires a record id: {route.method} {route.path}")
            path = path.format(id=quote(record_id, safe=""))
        return f"{self._settings.base_url.rstrip('/')}{path}"

    async def _request(
        self,
        spec: ResourceSpec,
        route: Route,
        *,
        record_id: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> tuple[int, Any]:
        url = self._url(route, record_id)
        query = dict(params or {})
        if route.id_param and record_id is not None:
            query[route.id_param] = record_id
        if route.id_body_key and record_id is not None:
            body = dict(body or {})
            body[route.id_body_key] = record_id

        await self.start()
        assert self._session is not None
        logger.debug(
            "Data Store request. resource=%s method=%s url=%s params=%s",
            spec.kind,
            route.method,
            url,
            query,
        )
        try:
            async with self._session.request(
                route.method,
                url,
                params=query or None,
                json=body,
                headers=self._headers(),
            ) as resp:
                status = resp.status
                retry_after_header = resp.headers.get("Retry-After")
                text = await resp.text()
        except asyncio.TimeoutError as e:
            raise TransientStoreError(
                f"Data Store request timed out: {route.method} {url}",
                resource=spec.kind,
            ) from e
        except aiohttp.ClientError as e:
            raise TransientStoreError(
                f"Data Store request failed: {route.method} {url}: {e}",
                resource=spec.kind,
            ) from e

        payload: Any = None
        decode_error: Optional[ValueError] = None
        if text.strip():
            try:
                payload = json.loads(text)
            except ValueError as e:
                decode_error = e

        if status == 503:
            raise ServiceUnavailableError(
                _error_message(payload, status),
                resource=spec.kind,
                retry_after=_parse_retry_after(retry_after_header, payload),
            )
        if status == 429 or 500 <= status < 600:
            raise TransientStoreError(_error_message(payload, status), resource=spec.kind, status=status)
        if status == 404 and allow_not_found:
            return status, payload
        if not 200 <= status < 300:
            raise StoreRequestError(_error_message(payload, status), resource=spec.kind, status=status)
        if decode_error is not None:
            raise MalformedResponseError(
                f"Response body is not JSON: {route.method} {url}",
                resource=spec.kind,
                status=status,
            ) from decode_error
        return status, payload

    async def fetch_page(
        self,
        resource: ResourceKind,
        filters: Optional[Mapping[str, str]] = None,
        cursor: Optional[str] = None,
    ) -> Page:
        spec = get_resource(resource)
        params = normalize_filters(filters)
        spec.validate_filters(params)
        if spec.pagination_key:
            params["limit"] = str(self._settings.page_size)
            if cursor:
                params["cursor"] = cursor
        _, payload = await self._request(spec, spec.list_route, params=params)
        return self._parse_page(spec, payload)

    def _parse_page(self, spec: ResourceSpec, payload: Any) -> Page:
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Expected a JSON object for {spec.kind}", resource=spec.kind)
        raw = payload.get(spec.list_key)

        if spec.singleton:
            if not raw:
                return Page(records=[], total=0)
            record = spec.parse_record(raw, default_id=self._identity.user_id)
            return Page(records=[record], total=1)

        if not isinstance(raw, list):
            raise MalformedResponseError(
                f"Response is missing the {spec.list_key!r} list",
                resource=spec.kind,
            )
        records = [spec.parse_record(item) for item in raw]
        if not spec.pagination_key:
            return Page(records=records, total=len(records))

        pagination = payload.get(spec.pagination_key) or {}
        if not isinstance(pagination, dict):
            raise MalformedResponseError(f"Invalid pagination block for {spec.kind}", resource=spec.kind)
        next_cursor = pagination.get("nextCursor")
        total = pagination.get("totalGoals")
        return Page(
            records=records,
            cursor=str(next_cursor) if next_cursor else None,
            has_more=bool(pagination.get("hasMore", False)),
            total=int(total) if isinstance(total, (int, str)) and str(total).isdigit() else None,
        )

    def _parse_write(
        self,
        spec: ResourceSpec,
        payload: Any,
        fields: Mapping[str, Any],
        *,
        record_id: Optional[str],
    ) -> Record:
        if isinstance(payload, dict) and payload.get("success") is False:
            raise StoreRequestError(_error_message(payload, 200), resource=spec.kind, status=200)
        if spec.item_key and isinstance(payload, dict) and spec.item_key in payload:
            return spec.parse_record(payload[spec.item_key], default_id=record_id)

        echo_id = record_id
        if echo_id is None and spec.natural_id_field:
            natural = fields.get(spec.natural_id_field)
            echo_id = str(natural) if natural not in (None, "") else None
        if echo_id is None and spec.singleton:
            echo_id = self._identity.user_id or None
        if echo_id is None:
            raise MalformedResponseError(
                f"Write response for {spec.kind} does not identify the record",
                resource=spec.kind,
            )
        return Record(id=echo_id, fields=dict(fields))

    async def create(self, resource: ResourceKind, fields: Mapping[str, Any]) -> Record:
        spec = get_resource(resource)
        _, payload = await self._request(spec, spec.create_route, body=spec.encode_fields(fields))
        record = self._parse_write(spec, payload, fields, record_id=None)
        logger.info("Record created. resource=%s record_id=%s", spec.kind, record.id)
        return record

    async def update(self, resource: ResourceKind, record_id: str, fields: Mapping[str, Any]) -> Record:
        spec = get_resource(resource)
        _, payload = await self._request(
            spec,
            spec.update_route,
            record_id=None if spec.singleton else record_id,
            body=spec.encode_fields(fields),
        )
        return self._parse_write(spec, payload, fields, record_id=record_id)

    async def delete(self, resource: ResourceKind, record_id: str) -> bool:
        spec = get_resource(resource)
        status, _ = await self._request(
            spec,
            spec.delete_route,
            record_id=None if spec.singleton else record_id,
            allow_not_found=True,
        )
        if status == 404:
            logger.info("Record already absent on delete. resource=%s record_id=%s", spec.kind, record_id)
            return False
        return True
