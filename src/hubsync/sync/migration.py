"""Bulk export and restore of the whole workspace.

Export tries the privileged ``export_all_data`` function first and falls
back to reading each record family on its own; a family that cannot be
read becomes an empty list and the snapshot is still produced.

Restore runs through a fixed sequence of steps::

    start -> elevate -> write-sections -> write-resources -> write-views
          -> write-settings -> write-users -> revert -> done

Each row is written on its own: a failure is recorded in the
``ImportSummary`` and the loop moves on. Users are written last so the
acting user's temporary ``canEditAllSections`` grant (itself stored on a
profile row) stays in place while sections and resources are written.
Activities are exported for audit purposes but never restored.
"""

from __future__ import annotations

import copy
import inspect
import json
import logging
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..errors import ExportError, StoreError
from .models import (
    ImportSummary,
    MigrationStep,
    ProgressEvent,
    Resource,
    RowError,
    Section,
)

if TYPE_CHECKING:
    from ..repository import HubRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Any]

EXPORT_FAMILIES = ("users", "sections", "resources", "activities", "views")


# ---------------------------------------------------------------------------
# Snapshot shape helpers
# ---------------------------------------------------------------------------


def iter_snapshot_resources(resources: Any) -> Iterator[tuple[str | None, dict]]:
    """Yield ``(section_id, row)`` from an array or a ``{section_id: [...]}`` map."""
    if isinstance(resources, list):
        for row in resources:
            if isinstance(row, dict):
                sid = row.get("section_id") or row.get("sectionId") or row.get("section")
                yield (str(sid) if sid else None), row
    elif isinstance(resources, dict):
        for sid, rows in resources.items():
            for row in rows if isinstance(rows, list) else []:
                if isinstance(row, dict):
                    yield str(sid), row


def iter_snapshot_settings(settings: Any) -> Iterator[tuple[Any, Any]]:
    """Yield ``(key, value)`` from ``[{key, value}]`` or ``{key: value}``."""
    if isinstance(settings, list):
        for row in settings:
            if isinstance(row, dict):
                yield row.get("key"), row.get("value")
            else:
                yield None, row
    elif isinstance(settings, dict):
        yield from settings.items()


def snapshot_counts(snapshot: dict) -> dict[str, int]:
    def _len(value: Any) -> int:
        return len(value) if isinstance(value, list) else 0

    return {
        "sections": _len(snapshot.get("sections")),
        "resources": sum(1 for _ in iter_snapshot_resources(snapshot.get("resources"))),
        "views": _len(snapshot.get("views")),
        "siteSettings": sum(1 for _ in iter_snapshot_settings(snapshot.get("siteSettings"))),
        "users": _len(snapshot.get("users")),
    }


def _view_row(view: dict) -> dict:
    row = {
        "id": view.get("id"),
        "user_id": view.get("user_id") or view.get("userId"),
        "resource_id": view.get("resource_id") or view.get("resourceId"),
        "count": view.get("count") or view.get("view_count") or view.get("views"),
        "last_viewed_at": view.get("last_viewed_at")
        or view.get("lastViewedAt")
        or view.get("last_viewed"),
    }
    return {k: v for k, v in row.items() if v is not None}


async def emit_progress(on_progress: ProgressCallback | None, **fields) -> None:
    """Deliver a ProgressEvent; callback errors are logged and dropped."""
    if on_progress is None:
        return
    try:
        result = on_progress(ProgressEvent(**fields))
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug("Progress callback raised, ignoring: %s", e)


def load_snapshot(path: str | Path) -> dict:
    """Read a snapshot document from a JSON file.

    Raises:
        ValueError: If the file does not hold a JSON object.
    """
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"Snapshot {path} must contain a JSON object")
    return data


def dump_snapshot(snapshot: dict, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(snapshot, indent=2, default=str), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MigrationEngine:
    """Export the workspace to one snapshot and restore it.

    Args:
        repository: CRUD facade used for every read and write.
    """

    def __init__(self, repository: HubRepository) -> None:
        self.repo = repository

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def _export_via_rpc(self) -> dict | None:
        try:
            payload = await self.repo.export_all_rpc()
        except StoreError as e:
            logger.warning("export_all_data unavailable, reading per family: %s", e)
            return None
        if not isinstance(payload, dict):
            logger.warning("export_all_data returned no object, reading per family")
            return None
        return {
            family: payload.get(family) if isinstance(payload.get(family), list) else []
            for family in EXPORT_FAMILIES
        } | {"siteSettings": payload.get("siteSettings")}

    async def _read_family(self, name: str, reader, failed: list[str]) -> list:
        try:
            rows = await reader()
        except StoreError as e:
            logger.warning("Export of %s failed, continuing without it: %s", name, e)
            failed.append(name)
            return []
        return rows if isinstance(rows, list) else []

    async def export_raw_state(self) -> dict:
        """Build a snapshot of every record family.

        Returns:
            ``{users, sections, resources, activities, views, siteSettings,
            exportDate, totalRecords}``.

        Raises:
            ExportError: If no family at all could be read.
        """
        failed: list[str] = []
        snapshot = await self._export_via_rpc()

        if snapshot is None:
            snapshot = {
                "users": await self._read_family("users", self.repo.get_all_users, failed),
                "sections": await self._read_family(
                    "sections", self.repo.get_all_sections, failed
                ),
                "resources": await self._read_family(
                    "resources", self.repo.get_all_resources, failed
                ),
                "activities": await self._read_family(
                    "activities", self.repo.get_all_activities, failed
                ),
                "views": await self._read_family("views", self.repo.get_all_views, failed),
            }

        if not isinstance(snapshot.get("siteSettings"), list):
            snapshot["siteSettings"] = await self._read_family(
                "siteSettings", self.repo.get_all_site_settings, failed
            )

        if len(failed) == len(EXPORT_FAMILIES) + 1:
            raise ExportError("Export failed: no record family could be read")

        snapshot["exportDate"] = datetime.now(timezone.utc).isoformat()
        snapshot["totalRecords"] = {
            family: len(snapshot[family]) for family in (*EXPORT_FAMILIES, "siteSettings")
        }
        logger.info("Exported snapshot: %s", snapshot["totalRecords"])
        return snapshot

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def _write_row(
        self,
        summary: ImportSummary,
        family: str,
        step: MigrationStep,
        on_progress: ProgressCallback | None,
        row_no: int,
        write,
        *,
        row_id: str | None = None,
        key: str | None = None,
        section_id: str | None = None,
    ) -> None:
        """Run one row write; record ok or the isolated failure."""
        try:
            await write()
        except Exception as e:
            logger.warning("Restore %s row %d failed: %s", family, row_no, e)
            summary.record_error(
                family,
                RowError(row=row_no, id=row_id, key=key, section_id=section_id, error=str(e)),
            )
            await emit_progress(
                on_progress,
                step=step,
                id=row_id,
                key=key,
                section_id=section_id,
                status="error",
                error=str(e),
            )
            return
        summary.record_ok(family)
        await emit_progress(
            on_progress, step=step, id=row_id, key=key, section_id=section_id, status="ok"
        )

    def _fail_row(
        self, summary: ImportSummary, family: str, row_no: int, message: str, **ids
    ) -> None:
        logger.warning("Restore %s row %d skipped: %s", family, row_no, message)
        summary.record_error(family, RowError(row=row_no, error=message, **ids))

    async def import_raw_state(
        self,
        snapshot: dict,
        on_progress: ProgressCallback | None = None,
    ) -> ImportSummary:
        """Restore *snapshot* into the store.

        Args:
            snapshot: Document produced by ``export_raw_state`` (resources
                and siteSettings may be arrays or maps).
            on_progress: Called with a ``ProgressEvent`` for every step and
                row. Its exceptions are ignored.

        Returns:
            Per-family ok counts and row errors.

        Raises:
            NotAuthenticatedError: Nobody is signed in.
            PermissionDeniedError: The actor is neither admin nor manager.
                Nothing has been written in either case.
        """
        try:
            return await self._import(snapshot if isinstance(snapshot, dict) else {}, on_progress)
        except Exception as e:
            logger.error("Restore failed: %s", e)
            await emit_progress(on_progress, step=MigrationStep.ERROR, status="error", error=str(e))
            raise

    async def _import(
        self, data: dict, on_progress: ProgressCallback | None
    ) -> ImportSummary:
        actor = await self.repo.require_manager("restore data")
        summary = ImportSummary()
        await emit_progress(on_progress, step=MigrationStep.START, counts=snapshot_counts(data))

        original_permissions = await self._elevate(actor.id, summary, on_progress)
        try:
            await self._write_families(data, summary, on_progress)
        finally:
            if original_permissions is not None:
                await self._revert(actor.id, original_permissions, summary, on_progress)

        await emit_progress(on_progress, step=MigrationStep.DONE)
        logger.info(
            "Restore finished: %d rows ok, %d rows failed",
            summary.total_ok,
            summary.total_errors,
        )
        return summary

    async def _elevate(
        self, actor_id: str, summary: ImportSummary, on_progress: ProgressCallback | None
    ) -> dict | None:
        """Grant ``canEditAllSections``; return the permissions to restore."""
        try:
            current = await self.repo.get_user(actor_id) or {}
            perms = current.get("permissions")
            original = copy.deepcopy(perms) if isinstance(perms, dict) else {}
            elevated = {**original, "canEditAllSections": True}
            await self.repo.update_permissions(actor_id, elevated)
        except StoreError as e:
            logger.warning("Could not elevate permissions for restore: %s", e)
            await emit_progress(
                on_progress, step=MigrationStep.ELEVATE, id=actor_id, status="error", error=str(e)
            )
            return None
        summary.elevated = True
        await emit_progress(on_progress, step=MigrationStep.ELEVATE, id=actor_id, status="ok")
        return original

    async def _revert(
        self,
        actor_id: str,
        original_permissions: dict,
        summary: ImportSummary,
        on_progress: ProgressCallback | None,
    ) -> None:
        try:
            await self.repo.update_permissions(actor_id, original_permissions)
        except Exception as e:
            logger.error(
                "Could not revert temporary permissions for %s; elevation remains: %s",
                actor_id,
                e,
            )
            await emit_progress(
                on_progress, step=MigrationStep.REVERT, id=actor_id, status="error", error=str(e)
            )
            return
        summary.reverted = True
        await emit_progress(on_progress, step=MigrationStep.REVERT, id=actor_id, status="ok")

    async def _write_families(
        self, data: dict, summary: ImportSummary, on_progress: ProgressCallback | None
    ) -> None:
        # write-sections
        for row_no, raw in enumerate(data.get("sections") or [], 1):
            row = raw if isinstance(raw, dict) else {}
            section_id = row.get("section_id") or row.get("sectionId") or row.get("id")
            if section_id is None or section_id == "":
                self._fail_row(summary, "sections", row_no, "missing section id")
                continue
            await self._write_row(
                summary,
                "sections",
                MigrationStep.WRITE_SECTIONS,
                on_progress,
                row_no,
                lambda r=row: self.repo.save_section(Section.from_row(r), log=False),
                row_id=str(section_id),
            )

        # write-resources
        for row_no, (sid, raw) in enumerate(iter_snapshot_resources(data.get("resources")), 1):
            rid = str(raw["id"]) if raw.get("id") is not None else None
            if not sid:
                self._fail_row(summary, "resources", row_no, "missing section id", id=rid)
                continue
            await self._write_row(
                summary,
                "resources",
                MigrationStep.WRITE_RESOURCES,
                on_progress,
                row_no,
                lambda r=raw, s=sid: self.repo.save_resource(
                    Resource.from_row(r, section_id=s), log=False
                ),
                row_id=rid,
                section_id=sid,
            )

        # Activities are audit history and are never replayed.

        # write-views
        for row_no, raw in enumerate(data.get("views") or [], 1):
            view = _view_row(raw if isinstance(raw, dict) else {})
            vid = str(view["id"]) if "id" in view else None
            if not (view.get("user_id") and view.get("resource_id")):
                self._fail_row(
                    summary, "views", row_no, "missing user_id or resource_id", id=vid
                )
                continue
            await self._write_row(
                summary,
                "views",
                MigrationStep.WRITE_VIEWS,
                on_progress,
                row_no,
                lambda v=view: self.repo.upsert_view(v),
                row_id=vid,
            )

        # write-settings
        for row_no, (key, value) in enumerate(
            iter_snapshot_settings(data.get("siteSettings")), 1
        ):
            if not isinstance(key, str) or not key:
                self._fail_row(summary, "settings", row_no, "setting without a string key")
                continue
            await self._write_row(
                summary,
                "settings",
                MigrationStep.WRITE_SETTINGS,
                on_progress,
                row_no,
                lambda k=key, v=value: self.repo.write_site_setting(k, v),
                key=key,
            )

        # write-users
        for row_no, raw in enumerate(data.get("users") or [], 1):
            user = raw if isinstance(raw, dict) else {}
            uid = user.get("id")
            await self._write_row(
                summary,
                "users",
                MigrationStep.WRITE_USERS,
                on_progress,
                row_no,
                lambda u=user: self.repo.save_user(u, log=False),
                row_id=str(uid or user.get("email") or "") or None,
            )
