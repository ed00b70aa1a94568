from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

ResourceKind = Literal["goals", "notes", "savedPrograms", "profileFields"]
RESOURCE_KINDS: tuple[ResourceKind, ...] = ("goals", "notes", "savedPrograms", "profileFields")

NoticeLevel = Literal["warning", "error"]


@dataclass(slots=True, eq=False)
class Record:
    """
    A uniquely identified field bag.

    Two records are equal when their ids are equal, regardless of field values.
    `confirmed` is False for a client-side placeholder the server has not acknowledged.
    """

    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    confirmed: bool = True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def with_fields(self, fields: dict[str, Any], *, confirmed: Optional[bool] = None) -> Record:
        merged = dict(self.fields)
        merged.update(fields)
        return Record(
            id=self.id,
            fields=merged,
            confirmed=self.confirmed if confirmed is None else confirmed,
        )


@dataclass(slots=True)
class Page:
    records: list[Record]
    cursor: Optional[str] = None
    has_more: bool = False
    total: Optional[int] = None


@dataclass(slots=True)
class CacheEntry:
    resource_key: str
    records: list[Record]
    cursor: Optional[str]
    has_more: bool
    fetched_at: float


@dataclass(slots=True)
class PendingEdit:
    record_id: str
    fields: dict[str, Any]
    armed_at: float
    attempts: int = 0


@dataclass(slots=True)
class Notice:
    level: NoticeLevel
    message: str
    record_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    user_id: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id.strip())
