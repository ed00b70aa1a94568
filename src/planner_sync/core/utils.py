from __future__ import annotations

import uuid
from typing import Mapping, Optional

PLACEHOLDER_PREFIX = "tmp-"


def new_placeholder_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex[:12]}"


def normalize_filters(filters: Optional[Mapping[str, object]]) -> dict[str, str]:
    """Drop empty values and the "All" sentinel; stringify the rest."""
    if not filters:
        return {}
    normalized: dict[str, str] = {}
    for name, value in filters.items():
        if value is None:
            continue
        text = str(value).strip()
        if not text or text == "All":
            continue
        normalized[name] = text
    return normalized


def build_cache_key(resource: str, filters: Optional[Mapping[str, object]] = None) -> str:
    normalized = normalize_filters(filters)
    if not normalized:
        return resource
    query = "&".join(f"{name}={normalized[name]}" for name in sorted(normalized))
    return f"{resource}?{query}"


def resource_of_cache_key(cache_key: str) -> str:
    return cache_key.split("?", 1)[0]
