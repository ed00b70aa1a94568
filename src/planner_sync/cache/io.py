from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from planner_sync.core.models import CacheEntry, Record

SchemaVersion = 1


def atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def _encode_record(record: Record) -> dict:
    return {"id": record.id, "fields": record.fields}


def _decode_record(payload: Any) -> Record:
    if not isinstance(payload, dict):
        raise ValueError(f"Cached record must be an object, got: {type(payload).__name__}")
    fields = payload.get("fields", {})
    if not isinstance(fields, dict):
        raise ValueError("Cached record fields must be an object")
    return Record(id=str(payload["id"]), fields=dict(fields))


def encode_entry(entry: CacheEntry) -> str:
    payload = {
        "schema_version": SchemaVersion,
        "resource_key": entry.resource_key,
        "records": [_encode_record(record) for record in entry.records],
        "cursor": entry.cursor,
        "has_more": entry.has_more,
        "fetched_at": entry.fetched_at,
    }
    return json.dumps(payload, sort_keys=True)


def decode_entry(raw: str) -> CacheEntry:
    """Decode a stored entry. Raises ValueError (or KeyError/TypeError) for anything unusable."""
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Cache entry must be a JSON object")
    version = int(payload.get("schema_version", 0))
    if version != SchemaVersion:
        raise ValueError(f"Cache entry schema mismatch. expected={SchemaVersion} actual={version}")
    records_payload = payload["records"]
    if not isinstance(records_payload, list):
        raise ValueError("Cache entry records must be a list")
    cursor = payload.get("cursor")
    return CacheEntry(
        resource_key=str(payload["resource_key"]),
        records=[_decode_record(item) for item in records_payload],
        cursor=str(cursor) if cursor is not None else None,
        has_more=bool(payload.get("has_more", False)),
        fetched_at=float(payload["fetched_at"]),
    )
