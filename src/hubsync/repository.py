"""UI-facing CRUD over the workspace tables.

``HubRepository`` is the single entry point the UI layer (and the MCP
tools) use for reads and writes. Every remote call runs in a worker
thread under the retry wrapper. Writes are published to the attached
change feed; a local feed hands them to refresh schedulers in the same
process, a store-backed feed hears them back from the server.
Section, resource, user and setting writes also append an activity row.

Reads that order by a column fall back to other columns when the store
rejects the first one (older schemas lack some columns), then to no
ordering at all.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any

from .core.async_utils import run_with_timeout
from .core.client import StoreClient
from .core.realtime import ChangeEvent, ChangeFeed
from .core.retry import RetryableRemoteCall, call_store
from .errors import (
    InputValidationError,
    NotAuthenticatedError,
    PermissionDeniedError,
    StoreError,
    TransientNetworkError,
)
from .sync.config_merger import ConfigMerger, parse_config
from .sync.models import Profile, Resource, Section

logger = logging.getLogger(__name__)

SECTION_ORDERS = ["name.asc", "section_id.asc", None]
USER_ORDERS = ["username.asc", "name.asc", None]
RESOURCE_ORDERS = ["created_at.desc", "title.asc", None]
ACTIVITY_ORDERS = ["timestamp.desc", "created_at.desc", None]
VIEW_ORDERS = ["last_viewed_at.desc", None]
SETTING_ORDERS = ["key.asc", None]

_SECTION_IN_TEXT = re.compile(r"section\s+([A-Za-z0-9_-]+)", re.IGNORECASE)


def _is_schema_error(exc: StoreError) -> bool:
    """A plain rejection (e.g. unknown order column), not auth or network."""
    return not isinstance(exc, (PermissionDeniedError, TransientNetworkError))


class HubRepository:
    """Async CRUD facade over a ``StoreClient``.

    Args:
        client: Store binding.
        retry: Retry wrapper shared by all calls.
        feed: Optional change feed; writes are published to it.
        page_size: Rows per request for full-table reads.
        activity_timeout: Wall-clock budget for activity logging.
    """

    def __init__(
        self,
        client: StoreClient,
        retry: RetryableRemoteCall | None = None,
        feed: ChangeFeed | None = None,
        page_size: int = 1000,
        activity_timeout: float = 1.5,
    ) -> None:
        self.client = client
        self.retry = retry or RetryableRemoteCall()
        self.feed = feed
        self.page_size = page_size
        self.activity_timeout = activity_timeout
        self.config_merger = ConfigMerger(client, self.retry, feed)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _call(self, func, *args, **kwargs):
        return await call_store(self.retry, func, *args, **kwargs)

    def _publish(self, table: str, event: str, record: dict) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(table, event, record))

    async def _select_ordered(
        self,
        table: str,
        orders: list[str | None],
        *,
        filters: dict | None = None,
        columns: str = "*",
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[list[dict], str | None]:
        """Select with the first order the store accepts.

        Returns the rows and the order that worked.
        """
        last_error: StoreError | None = None
        for order in orders:
            try:
                rows = await self._call(
                    self.client.select,
                    table,
                    columns=columns,
                    filters=filters,
                    order=order,
                    limit=limit,
                    offset=offset,
                )
                return rows or [], order
            except StoreError as e:
                if not _is_schema_error(e):
                    raise
                logger.debug("Order %s rejected on %s: %s", order, table, e)
                last_error = e
        assert last_error is not None
        raise last_error

    async def _select_all(
        self,
        table: str,
        orders: list[str | None],
        *,
        filters: dict | None = None,
        columns: str = "*",
    ) -> list[dict]:
        """Read every matching row, one page at a time."""
        rows, order = await self._select_ordered(
            table, orders, filters=filters, columns=columns, limit=self.page_size
        )
        result = list(rows)
        offset = len(rows)
        while len(rows) == self.page_size:
            rows = await self._call(
                self.client.select,
                table,
                columns=columns,
                filters=filters,
                order=order,
                limit=self.page_size,
                offset=offset,
            ) or []
            result.extend(rows)
            offset += len(rows)
        return result

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def get_current_user_id(self) -> str | None:
        user = await self._call(self.client.get_user)
        return user.get("id") if user else None

    async def get_current_profile(self) -> Profile | None:
        user_id = await self.get_current_user_id()
        if not user_id:
            return None
        row = await self.get_user(user_id)
        return Profile.from_row(row) if row else None

    async def require_manager(self, action: str = "perform this action") -> Profile:
        """Return the actor's profile if it is admin or can manage users.

        Raises:
            NotAuthenticatedError: Nobody is signed in.
            PermissionDeniedError: The actor lacks the rights.
        """
        user_id = await self.get_current_user_id()
        if not user_id:
            raise NotAuthenticatedError("Not authenticated", status=401)
        row = await self.get_user(user_id)
        profile = Profile.from_row(row or {"id": user_id})
        if not profile.can_manage:
            raise PermissionDeniedError(
                f"Only admin or managers can {action}", status=403
            )
        return profile

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    async def save_section(
        self, section: Section | dict, include_config: bool = True, log: bool = True
    ) -> dict:
        """Upsert a section by ``section_id``.

        With ``include_config=False`` the stored config is left untouched
        (only name/icon/color/data are written). ``log=False`` skips the
        activity record; bulk imports log one summary row instead.
        """
        if isinstance(section, dict):
            section = Section.from_row(section)
        if not section.id:
            raise InputValidationError("Section id is required")
        row = section.to_row()
        if not row["name"]:
            row["name"] = section.id
        if not include_config:
            row.pop("config")
        existed = log and await self.get_section(section.id) is not None
        saved = await self._call(
            self.client.upsert, "sections", row, on_conflict="section_id"
        )
        self._publish("sections", "UPDATE", {"section_id": section.id})
        if log:
            await self.log_activity(
                "UPDATE_SECTION" if existed else "CREATE_SECTION",
                section_id=section.id,
                title=row["name"],
                description=f"{'Updated' if existed else 'Created'} section {section.id}",
            )
        return saved[0] if saved else row

    async def get_section(self, section_id: str) -> dict | None:
        return await self._call(
            self.client.select,
            "sections",
            filters={"section_id": section_id},
            single=True,
        )

    async def get_all_sections(self) -> list[dict]:
        return await self._select_all("sections", SECTION_ORDERS)

    async def delete_section(self, section_id: str, log: bool = True) -> bool:
        await self._call(
            self.client.delete, "sections", {"section_id": section_id}
        )
        self._publish("sections", "DELETE", {"section_id": section_id})
        if log:
            await self.log_activity(
                "DELETE_SECTION",
                section_id=section_id,
                description=f"Deleted section {section_id}",
            )
        return True

    async def save_section_config(self, section_id: str, partial: dict) -> bool:
        """Merge *partial* into the section's config. See ``ConfigMerger.save``."""
        if not section_id:
            raise InputValidationError("Section id is required")
        return await self.config_merger.save(section_id, partial)

    async def get_section_config(self, section_id: str) -> dict | None:
        row = await self.get_section(section_id)
        return parse_config(row.get("config")) if row else None

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def save_resource(self, resource: Resource | dict, log: bool = True) -> dict:
        """Upsert a resource by id.

        A missing id is generated here, before the first attempt, so a
        retried write cannot create a second row. A resource that arrives
        without an id is logged as ``CREATE_RESOURCE``.
        """
        if isinstance(resource, dict):
            resource = Resource.from_row(resource)
        if not resource.section_id:
            raise InputValidationError("Resource section id is required")
        created = resource.id is None
        if created:
            resource = resource.model_copy(update={"id": str(uuid.uuid4())})
        if resource.created_by is None:
            resource = resource.model_copy(
                update={"created_by": await self.get_current_user_id()}
            )
        row = resource.to_row()
        saved = await self._call(self.client.upsert, "resources", row, on_conflict="id")
        stored = saved[0] if saved else row
        self._publish("resources", "UPDATE", stored)
        if log:
            await self.log_activity(
                "CREATE_RESOURCE" if created else "UPDATE_RESOURCE",
                section_id=resource.section_id,
                resource_id=resource.id,
                title=resource.title,
                metadata={"type": resource.type},
            )
        return stored

    async def get_resource(self, resource_id: str) -> dict | None:
        return await self._call(
            self.client.select, "resources", filters={"id": resource_id}, single=True
        )

    async def get_resources_by_section(self, section_id: str) -> list[dict]:
        return await self._select_all(
            "resources", RESOURCE_ORDERS, filters={"section_id": section_id}
        )

    async def get_resources_by_type(self, section_id: str, type_id: str) -> list[dict]:
        return await self._select_all(
            "resources",
            RESOURCE_ORDERS,
            filters={"section_id": section_id, "type": type_id},
        )

    async def get_all_resources(self) -> list[dict]:
        return await self._select_all("resources", RESOURCE_ORDERS)

    async def delete_resource(self, resource_id: str, log: bool = True) -> bool:
        deleted = await self._call(self.client.delete, "resources", {"id": resource_id})
        record = deleted[0] if deleted else {"id": resource_id}
        self._publish("resources", "DELETE", record)
        if log:
            await self.log_activity(
                "DELETE_RESOURCE",
                section_id=record.get("section_id"),
                resource_id=resource_id,
                title=record.get("title"),
            )
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def save_user(self, user: Profile | dict, log: bool = True) -> dict:
        if isinstance(user, dict):
            user = Profile.from_row(user)
        if not user.id:
            raise InputValidationError("User id is required")
        saved = await self._call(
            self.client.upsert, "profiles", user.to_row(), on_conflict="id"
        )
        if log:
            await self.log_activity(
                "UPDATE_USER", title=user.username or user.id, metadata={"target": user.id}
            )
        return saved[0] if saved else user.to_row()

    async def get_user(self, user_id: str) -> dict | None:
        return await self._call(
            self.client.select, "profiles", filters={"id": user_id}, single=True
        )

    async def get_all_users(self) -> list[dict]:
        return await self._select_all("profiles", USER_ORDERS)

    async def delete_user(self, user_id: str, log: bool = True) -> bool:
        await self._call(self.client.delete, "profiles", {"id": user_id})
        if log:
            await self.log_activity(
                "DELETE_USER", title=user_id, metadata={"target": user_id}
            )
        return True

    async def update_permissions(self, user_id: str, permissions: dict) -> list[dict]:
        return await self._call(
            self.client.update,
            "profiles",
            {"permissions": permissions},
            {"id": user_id},
        )

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def _resolve_username(self, user_id: str | None) -> str | None:
        if not user_id:
            return None
        row = await self._call(
            self.client.select,
            "profiles",
            columns="username,name,email",
            filters={"id": user_id},
            single=True,
        )
        if not row:
            return None
        return row.get("username") or row.get("name") or row.get("email")

    async def _insert_activity(
        self,
        action: str,
        section_id: str | None,
        resource_id: str | None,
        title: str | None,
        description: str | None,
        username: str | None,
        metadata: dict | None,
        timestamp: str | None,
    ) -> dict:
        user_id = await self.get_current_user_id()
        if not username:
            username = await self._resolve_username(user_id)

        if section_id and section_id.strip().lower() == "general":
            section_id = None
        if not section_id and description:
            match = _SECTION_IN_TEXT.search(description)
            if match:
                section_id = match.group(1)

        meta = dict(metadata or {})
        meta.update(
            {
                "username": username,
                "title": title,
                "description": description or title,
                "section": section_id,
            }
        )
        payload: dict[str, Any] = {
            "user_id": user_id,
            "action": action or "EVENT",
            "section_id": section_id,
            "resource_id": resource_id,
            "metadata": meta,
        }
        if timestamp:
            payload["timestamp"] = timestamp
        rows = await self._call(self.client.insert, "activities", payload)
        return rows[0] if rows else payload

    async def log_activity(
        self,
        action: str,
        section_id: str | None = None,
        resource_id: str | None = None,
        title: str | None = None,
        description: str | None = None,
        username: str | None = None,
        metadata: dict | None = None,
        timestamp: str | None = None,
    ) -> dict | None:
        """Append an audit record without holding up the caller.

        The write is abandoned after ``activity_timeout`` seconds and a
        failure is logged, not raised. Returns the stored row, or ``None``
        when the write failed or did not finish in time.
        """
        try:
            return await run_with_timeout(
                self._insert_activity(
                    action,
                    section_id,
                    resource_id,
                    title,
                    description,
                    username,
                    metadata,
                    timestamp,
                ),
                self.activity_timeout,
            )
        except (StoreError, InputValidationError) as e:
            logger.warning("Activity '%s' not recorded: %s", action, e)
            return None

    async def get_activities(self, limit: int = 1000, offset: int = 0) -> list[dict]:
        """Newest first, enriched with username/title/section for display."""
        rows, _ = await self._select_ordered(
            "activities", ACTIVITY_ORDERS, limit=limit, offset=offset
        )
        user_ids = sorted({r["user_id"] for r in rows if r.get("user_id")})
        users_by_id: dict[str, dict] = {}
        if user_ids:
            try:
                profiles = await self._call(
                    self.client.select,
                    "profiles",
                    columns="id,username,email",
                    filters={"id": ("in", user_ids)},
                )
            except StoreError as e:
                logger.warning("Could not load usernames for activities: %s", e)
                profiles = []
            users_by_id = {p["id"]: p for p in profiles or []}

        enriched = []
        for row in rows:
            meta = row.get("metadata") or {}
            prof = users_by_id.get(row.get("user_id") or "", {})
            enriched.append(
                {
                    **row,
                    "username": meta.get("username")
                    or prof.get("username")
                    or prof.get("email"),
                    "description": meta.get("description") or meta.get("title"),
                    "title": meta.get("title"),
                    "section": row.get("section_id") or meta.get("section"),
                }
            )
        return enriched

    async def get_all_activities(self) -> list[dict]:
        result: list[dict] = []
        offset = 0
        while True:
            page = await self.get_activities(limit=self.page_size, offset=offset)
            result.extend(page)
            if len(page) < self.page_size:
                return result
            offset += len(page)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def record_view(self, user_id: str, resource_id: str) -> bool:
        await self._call(
            self.client.rpc,
            "increment_view",
            {"p_user_id": user_id, "p_resource_id": resource_id},
        )
        return True

    async def get_all_views(self) -> list[dict]:
        return await self._select_all("views", VIEW_ORDERS)

    async def upsert_view(self, row: dict) -> dict:
        saved = await self._call(
            self.client.upsert, "views", row, on_conflict="user_id,resource_id"
        )
        return saved[0] if saved else row

    # ------------------------------------------------------------------
    # Site settings
    # ------------------------------------------------------------------

    async def get_site_setting(self, key: str) -> Any:
        """Return the setting value (JSON strings decoded), or ``None``."""
        if not key:
            raise InputValidationError("Missing setting key")
        row = await self._call(
            self.client.select,
            "site_settings",
            columns="value",
            filters={"key": key},
            single=True,
        )
        if not row:
            return None
        value = row.get("value")
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value

    async def write_site_setting(self, key: str, value: Any) -> dict:
        """Upsert a setting without the manager check (caller has done it)."""
        if not key or not isinstance(key, str):
            raise InputValidationError("Setting key must be a non-empty string")
        saved = await self._call(
            self.client.upsert,
            "site_settings",
            {"key": key, "value": value},
            on_conflict="key",
        )
        self._publish("site_settings", "UPDATE", {"key": key})
        return saved[0] if saved else {"key": key, "value": value}

    async def set_site_setting(self, key: str, value: Any) -> dict:
        """Upsert a setting; only admins and managers may do this."""
        if not key:
            raise InputValidationError("Missing setting key")
        await self.require_manager("update site settings")
        saved = await self.write_site_setting(key, value)
        await self.log_activity(
            "UPDATE_SETTING", title=key, description=f"Updated site setting {key}"
        )
        return saved

    async def get_all_site_settings(self) -> list[dict]:
        return await self._select_all(
            "site_settings", SETTING_ORDERS, columns="key,value"
        )

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def export_all_rpc(self) -> Any:
        """Privileged single-call snapshot (``export_all_data`` function)."""
        return await self._call(self.client.rpc, "export_all_data")
