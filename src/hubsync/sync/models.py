"""Pydantic models for workspace records and migration bookkeeping.

Record models (``Section``, ``Resource``, ``Profile``) convert between
the store's snake_case rows and the loose shapes found in snapshots,
which may use camelCase keys or older field names.

Migration models:

- ``MigrationStep``: States of the restore pipeline.
- ``ProgressEvent``: One progress notification.
- ``RowError``: A single isolated row failure.
- ``ImportSummary``: Per-family ok counts and error lists.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ROLES = ("admin", "editor", "viewer")


def _first(row: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return default


def _as_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return [str(t) for t in value]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Section(BaseModel):
    """Top-level content container.

    Attributes:
        id: Stable section id (``section_id`` column).
        name: Display name.
        icon: Icon identifier.
        color: Accent color.
        config: Nested tab/type/category configuration (kept as a dict
            so unknown keys survive round trips).
        data: Free-form section payload.
    """

    id: str
    name: str = ""
    icon: str = ""
    color: str = ""
    config: dict = Field(default_factory=dict)
    data: dict = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict) -> Section:
        section_id = _first(row, "section_id", "sectionId", "id")
        config = row.get("config")
        data = row.get("data")
        return cls(
            id=str(section_id) if section_id is not None else "",
            name=row.get("name") or "",
            icon=row.get("icon") or "",
            color=row.get("color") or "",
            config=config if isinstance(config, dict) else {},
            data=data if isinstance(data, dict) else {},
        )

    def to_row(self) -> dict:
        return {
            "section_id": self.id,
            "name": self.name,
            "icon": self.icon,
            "color": self.color,
            "config": self.config,
            "data": self.data,
        }


class Resource(BaseModel):
    """A linked content record inside one section and one type.

    ``category`` lives in the ``extra`` JSON column in the store.
    """

    id: str | None = None
    section_id: str
    type: str = ""
    title: str = ""
    description: str = ""
    url: str = ""
    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    extra: dict = Field(default_factory=dict)
    created_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict, section_id: str | None = None) -> Resource:
        extra = row.get("extra") if isinstance(row.get("extra"), dict) else {}
        sid = section_id or _first(row, "section_id", "sectionId", "section")
        rid = row.get("id")
        return cls(
            id=str(rid) if rid is not None else None,
            section_id=str(sid) if sid is not None else "",
            type=row.get("type") or "",
            title=row.get("title") or "",
            description=row.get("description") or "",
            url=row.get("url") or "",
            tags=_as_tags(row.get("tags")),
            category=_first(row, "category") or extra.get("category"),
            extra=dict(extra),
            created_by=_first(row, "created_by", "createdBy", "user_id", "userId"),
            created_at=_first(row, "created_at", "createdAt"),
            updated_at=_first(row, "updated_at", "updatedAt"),
        )

    def to_row(self) -> dict:
        """Row for insert/upsert. Timestamps are left to the store."""
        extra = dict(self.extra)
        if self.category is not None:
            extra["category"] = self.category
        row = {
            "section_id": self.section_id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "description": self.description,
            "tags": list(self.tags),
            "extra": extra,
        }
        if self.id is not None:
            row["id"] = self.id
        if self.created_by is not None:
            row["created_by"] = self.created_by
        return row


class Permissions(BaseModel):
    """Capability flags stored in ``profiles.permissions``.

    Serialized with camelCase keys; unknown keys are preserved.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    sections: list[str] = Field(default_factory=list)
    editable_sections: list[str] = Field(default_factory=list)
    can_view_all_sections: bool = False
    can_edit_all_sections: bool = False
    can_manage_users: bool = False
    can_delete_resources: bool = False
    disabled: bool = False

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class Profile(BaseModel):
    """A workspace user (``profiles`` row)."""

    id: str
    username: str = ""
    email: str = ""
    name: str = ""
    role: str = "viewer"
    permissions: Permissions = Field(default_factory=Permissions)

    @classmethod
    def from_row(cls, row: dict) -> Profile:
        perms = row.get("permissions")
        role = str(row.get("role") or "viewer").lower()
        return cls(
            id=str(row.get("id") or ""),
            username=row.get("username") or "",
            email=row.get("email") or "",
            name=row.get("name") or "",
            role=role if role in ROLES else "viewer",
            permissions=Permissions.model_validate(
                perms if isinstance(perms, dict) else {}
            ),
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role,
            "name": self.name,
            "email": self.email,
            "permissions": self.permissions.to_dict(),
        }

    @property
    def can_manage(self) -> bool:
        """Admin role or explicit manage-users capability."""
        return self.role == "admin" or self.permissions.can_manage_users

    @property
    def can_edit(self) -> bool:
        return self.role in ("admin", "editor") or self.permissions.can_edit_all_sections

    def capabilities(self) -> frozenset[str]:
        if self.permissions.disabled:
            return frozenset()
        caps = {"read"}
        if self.can_edit:
            caps.add("edit")
        if self.can_manage:
            caps.add("manage")
        return frozenset(caps)


# ---------------------------------------------------------------------------
# Migration bookkeeping
# ---------------------------------------------------------------------------


class MigrationStep(str, Enum):
    """States of the restore pipeline, in execution order."""

    START = "start"
    ELEVATE = "elevate"
    WRITE_SECTIONS = "write-sections"
    WRITE_RESOURCES = "write-resources"
    WRITE_VIEWS = "write-views"
    WRITE_SETTINGS = "write-settings"
    WRITE_USERS = "write-users"
    REVERT = "revert"
    DONE = "done"
    ERROR = "error"


class ProgressEvent(BaseModel):
    """One progress notification.

    Attributes:
        step: Pipeline state the event belongs to.
        id: Row id for id-keyed families.
        key: Row key for key-keyed families (site settings).
        section_id: Owning section for resource rows.
        status: ``ok`` or ``error`` for per-row events.
        error: Error text when ``status`` is ``error``.
        counts: Row counts per family (``start`` only).
    """

    step: MigrationStep
    id: str | None = None
    key: str | None = None
    section_id: str | None = None
    status: str | None = None
    error: str | None = None
    counts: dict[str, int] | None = None

    model_config = {"frozen": True}


class RowError(BaseModel):
    """A row that failed to write; the batch continued past it.

    ``row`` is the 1-based position within its family.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    row: int
    id: str | None = None
    key: str | None = None
    section_id: str | None = None
    error: str


FAMILIES = ("sections", "tabs", "resources", "views", "settings", "users")


class ImportSummary(BaseModel):
    """Per-family counts for an import. Serializes as ``sectionsOk`` etc."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sections_ok: int = 0
    sections_err: list[RowError] = Field(default_factory=list)
    tabs_ok: int = 0
    tabs_err: list[RowError] = Field(default_factory=list)
    resources_ok: int = 0
    resources_err: list[RowError] = Field(default_factory=list)
    views_ok: int = 0
    views_err: list[RowError] = Field(default_factory=list)
    settings_ok: int = 0
    settings_err: list[RowError] = Field(default_factory=list)
    users_ok: int = 0
    users_err: list[RowError] = Field(default_factory=list)
    elevated: bool = False
    reverted: bool = False

    def record_ok(self, family: str) -> None:
        attr = f"{family}_ok"
        setattr(self, attr, getattr(self, attr) + 1)

    def record_error(self, family: str, error: RowError) -> None:
        getattr(self, f"{family}_err").append(error)

    @property
    def total_ok(self) -> int:
        return sum(getattr(self, f"{f}_ok") for f in FAMILIES)

    @property
    def total_errors(self) -> int:
        return sum(len(getattr(self, f"{f}_err")) for f in FAMILIES)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
