from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from planner_sync.core.models import Record, ResourceKind
from planner_sync.store.errors import MalformedResponseError


class _RecordSchema(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # Postgres serial ids arrive as integers.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class GoalFields(_RecordSchema):
    title: str
    category: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    completed: Optional[bool] = None


class NoteFields(_RecordSchema):
    text: str
    author: Optional[str] = None
    date: Optional[str] = None
    updatedAt: Optional[str] = None
    isOwnNote: Optional[bool] = None


class SavedProgramFields(_RecordSchema):
    title: Optional[str] = None
    organization: Optional[str] = None
    status: Optional[str] = None


class ProfileFields(_RecordSchema):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Route:
    method: str
    path: str
    id_param: Optional[str] = None
    id_body_key: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ResourceSpec:
    """
    How one resource maps onto the Data Store's REST handlers.

    `item_key` names the single record in a write response; when the handler only
    answers `{success: true}` the written fields are echoed back as the record.
    `natural_id_field` names a client-supplied id (saved programs are keyed by
    program id). A singleton resource holds exactly one record per session user.
    """

    kind: ResourceKind
    schema: type[_RecordSchema]
    list_route: Route
    list_key: str
    create_route: Route
    update_route: Route
    delete_route: Route
    item_key: Optional[str] = None
    pagination_key: Optional[str] = None
    filters: tuple[str, ...] = ()
    write_aliases: Mapping[str, str] = field(default_factory=dict)
    natural_id_field: Optional[str] = None
    singleton: bool = False
    autosave: bool = False

    def validate_filters(self, filters: Mapping[str, str]) -> None:
        unknown = sorted(set(filters) - set(self.filters))
        if unknown:
            raise ValueError(f"Unsupported filters for {self.kind}: {', '.join(unknown)}")

    def encode_fields(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        return {self.write_aliases.get(name, name): value for name, value in fields.items()}

    def parse_record(self, payload: Any, *, default_id: Optional[str] = None) -> Record:
        if not isinstance(payload, dict):
            raise MalformedResponseError(
                f"Expected a {self.kind} record object, got {type(payload).__name__}",
                resource=self.kind,
            )
        data = dict(payload)
        if default_id is not None and data.get("id") in (None, ""):
            data["id"] = default_id
        try:
            model = self.schema.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Invalid {self.kind} record: {e.error_count()} validation error(s)",
                resource=self.kind,
            ) from e
        fields = model.model_dump(exclude={"id"}, exclude_none=True)
        return Record(id=model.id, fields=fields)


RESOURCES: dict[ResourceKind, ResourceSpec] = {
    "goals": ResourceSpec(
        kind="goals",
        schema=GoalFields,
        list_route=Route("GET", "/api/counselor-goals"),
        list_key="goals",
        pagination_key="pagination",
        filters=("search", "category", "status"),
        create_route=Route("POST", "/api/goals"),
        update_route=Route("PATCH", "/api/goals/{id}"),
        delete_route=Route("DELETE", "/api/goals/{id}"),
        item_key="goal",
    ),
    "notes": ResourceSpec(
        kind="notes",
        schema=NoteFields,
        list_route=Route("GET", "/api/counselor-notes"),
        list_key="notes",
        filters=("studentId",),
        create_route=Route("POST", "/api/counselor-notes"),
        update_route=Route("PUT", "/api/counselor-notes", id_body_key="noteId"),
        delete_route=Route("DELETE", "/api/counselor-notes", id_param="noteId"),
        item_key="note",
        write_aliases={"text": "noteText"},
    ),
    "savedPrograms": ResourceSpec(
        kind="savedPrograms",
        schema=SavedProgramFields,
        list_route=Route("GET", "/api/user-programs"),
        list_key="savedPrograms",
        create_route=Route("POST", "/api/user-programs"),
        update_route=Route("POST", "/api/user-programs", id_body_key="programId"),
        delete_route=Route("DELETE", "/api/user-programs", id_param="programId"),
        natural_id_field="programId",
    ),
    "profileFields": ResourceSpec(
        kind="profileFields",
        schema=ProfileFields,
        list_route=Route("GET", "/api/user-profile"),
        list_key="profile",
        create_route=Route("PUT", "/api/user-profile"),
        update_route=Route("POST", "/api/user-profile"),
        delete_route=Route("DELETE", "/api/user-profile"),
        singleton=True,
        autosave=True,
    ),
}


def get_resource(kind: str) -> ResourceSpec:
    try:
        return RESOURCES[kind]  # type: ignore[index]
    except KeyError:
        raise ValueError(f"Unknown resource: {kind}") from None
