"""Import sections, tabs and resources from tabular data.

Input is three sheets (``Sections``, ``Tabs``, ``Resources``) given as
lists of row dicts, read from an ``.xlsx`` workbook or a directory of
CSV files, or derived from a JSON snapshot. Rows are forgiving: headers
match several aliases, a missing section id or title is synthesized, and
a section or tab that a resource refers to is created before the
resource is written, since the store only accepts resource types listed
in the section's own config.
"""

from __future__ import annotations

import csv
import logging
import secrets
import string
import uuid
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .config_merger import build_tab_config, is_valid_type_id, normalize_type_id
from .merge_key import merge_key
from .migration import ProgressCallback, emit_progress, iter_snapshot_resources
from .models import (
    ImportSummary,
    MigrationStep,
    Resource,
    RowError,
    Section,
)

if TYPE_CHECKING:
    from ..repository import HubRepository

logger = logging.getLogger(__name__)

SHEET_NAMES = ("Sections", "Tabs", "Resources")
_TRUTHY = {"yes", "true", "1"}
_RESOURCE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "hubsync:resources")
_ALPHABET = string.ascii_lowercase + string.digits

HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "section_id": ("Section ID", "SectionId", "sectionId", "section_id"),
    "name": ("Name", "name"),
    "icon": ("Icon", "icon"),
    "color": ("Color", "color"),
    "intro": ("Intro", "intro"),
    "visible": ("Visible", "visible"),
    "order": ("Order", "order"),
    "tab_id": ("Tab ID", "tabId", "id"),
    "tab_name": ("Tab Name", "tabName", "name"),
    "index": ("Index", "index"),
    "type": ("Type (tab id)", "Type", "type"),
    "title": ("Title", "title"),
    "description": ("Description", "description"),
    "url": ("URL", "Url", "url"),
    "category": ("Category", "category"),
    "tags": ("Tags (comma)", "Tags", "tags"),
}


def random_id(prefix: str) -> str:
    """``<prefix>-`` followed by eight random lower-case alphanumerics."""
    return f"{prefix}-" + "".join(secrets.choice(_ALPHABET) for _ in range(8))


def _cell(row: dict, field_name: str, default: Any = "") -> Any:
    for header in HEADER_ALIASES[field_name]:
        value = row.get(header)
        if value is not None and str(value).strip() != "":
            return value
    return default


def _text(row: dict, field_name: str) -> str:
    return str(_cell(row, field_name)).strip()


def _int(value: Any) -> int:
    try:
        return int(float(str(value).strip()))
    except ValueError:
        return 0


def _tags(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(t).strip() for t in value if str(t).strip()]
    return [t.strip() for t in str(value or "").split(",") if t.strip()]


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


@dataclass
class SheetSection:
    id: str
    name: str = ""
    icon: str = ""
    color: str = ""
    intro: str = ""
    visible: bool = True
    order: int = 0


@dataclass
class SheetTab:
    section_id: str
    id: str
    name: str = ""
    icon: str = ""
    index: int = 0


@dataclass
class SheetResource:
    section_id: str
    type: str = ""
    title: str = ""
    description: str = ""
    url: str = ""
    category: str = ""
    tags: list[str] = field(default_factory=list)


@dataclass
class SheetPayload:
    """Normalized rows ready for ``SpreadsheetImporter``."""

    sections: list[SheetSection] = field(default_factory=list)
    tabs: list[SheetTab] = field(default_factory=list)
    resources: list[SheetResource] = field(default_factory=list)


def parse_workbook(sheets: dict[str, list[dict]]) -> SheetPayload:
    """Normalize raw sheet rows.

    Section rows without an id and tab rows without a section or tab id
    are dropped. Resource rows are all kept; a missing section id is
    synthesized at import time.
    """
    payload = SheetPayload()

    for row in sheets.get("Sections") or []:
        sid = _text(row, "section_id")
        if not sid:
            continue
        payload.sections.append(
            SheetSection(
                id=sid,
                name=_text(row, "name"),
                icon=_text(row, "icon"),
                color=_text(row, "color"),
                intro=_text(row, "intro"),
                visible=str(_cell(row, "visible", "yes")).strip().lower() in _TRUTHY,
                order=_int(_cell(row, "order", 0)),
            )
        )

    for row in sheets.get("Tabs") or []:
        sid = _text(row, "section_id")
        tab_id = _text(row, "tab_id")
        if not (sid and tab_id):
            continue
        payload.tabs.append(
            SheetTab(
                section_id=sid,
                id=tab_id,
                name=_text(row, "tab_name"),
                icon=_text(row, "icon"),
                index=_int(_cell(row, "index", 0)),
            )
        )

    for row in sheets.get("Resources") or []:
        if not any(str(v).strip() for v in row.values() if v is not None):
            continue
        payload.resources.append(
            SheetResource(
                section_id=_text(row, "section_id"),
                type=_text(row, "type"),
                title=_text(row, "title"),
                description=_text(row, "description"),
                url=_text(row, "url"),
                category=_text(row, "category"),
                tags=_tags(_cell(row, "tags", "")),
            )
        )

    return payload


def read_csv_workbook(directory: str | Path) -> SheetPayload:
    """Read ``Sections.csv``, ``Tabs.csv`` and ``Resources.csv`` from *directory*.

    Missing files count as empty sheets.

    Raises:
        FileNotFoundError: If *directory* does not exist.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Workbook directory not found: {directory}")
    sheets: dict[str, list[dict]] = {}
    for name in SHEET_NAMES:
        path = directory / f"{name}.csv"
        if not path.exists():
            logger.debug("Sheet %s not present in %s", name, directory)
            continue
        with open(path, "r", encoding="utf-8-sig", newline="") as fh:
            sheets[name] = list(csv.DictReader(fh))
    return parse_workbook(sheets)


def read_xlsx_workbook(path: str | Path) -> SheetPayload:
    """Read the ``Sections``, ``Tabs`` and ``Resources`` sheets of an ``.xlsx`` file.

    The first row of each sheet is its header. Missing sheets count as
    empty; any other sheet (``Readme``) is ignored. Cells are read as
    their cached values, so formulas yield their last computed result.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If *path* is not a readable workbook.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Workbook not found: {path}")
    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
        raise ValueError(f"{path} is not a readable .xlsx workbook: {e}") from e

    sheets: dict[str, list[dict]] = {}
    try:
        for name in SHEET_NAMES:
            if name not in wb.sheetnames:
                logger.debug("Sheet %s not present in %s", name, path)
                continue
            rows = wb[name].iter_rows(values_only=True)
            header = next(rows, None) or ()
            keys = [str(h).strip() if h is not None else "" for h in header]
            sheets[name] = [
                {key: value for key, value in zip(keys, row) if key}
                for row in rows
            ]
    finally:
        wb.close()
    return parse_workbook(sheets)


TEMPLATE_ROWS: dict[str, list[dict]] = {
    "Sections": [
        {
            "Section ID": "example",
            "Name": "Example",
            "Icon": "fas fa-table-cells-large",
            "Color": "#007bff",
            "Intro": "Intro text (optional)",
            "Visible": "Yes",
            "Order": 1,
        }
    ],
    "Tabs": [
        {
            "Section ID": "example",
            "Tab ID": tab_id,
            "Tab Name": tab_name,
            "Icon": icon,
            "Index": index,
        }
        for index, (tab_id, tab_name, icon) in enumerate(
            [
                ("playbooks", "Playbooks", "fas fa-book"),
                ("box-links", "Box Links", "fas fa-link"),
                ("dashboards", "Dashboards", "fas fa-chart-bar"),
            ],
            1,
        )
    ],
    "Resources": [
        {
            "Section ID": "example",
            "Type (tab id)": "playbooks",
            "Title": "Getting Started",
            "Description": "How to begin",
            "URL": "https://example.com",
            "Category": "guide",
            "Tags (comma)": "onboarding, setup",
        }
    ],
    "Readme": [
        {"Note": "Fill out the sheets with your data. Section IDs must be unique."},
        {"Note": "Tabs: Tab ID is the canonical type id (e.g., playbooks, box-links)."},
        {"Note": "Resources: Type must match a Tab ID for its Section."},
    ],
}


def write_xlsx_template(path: str | Path) -> Path:
    """Write an import template with one example row per sheet."""
    path = Path(path)
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in TEMPLATE_ROWS.items():
        ws = wb.create_sheet(title)
        headers = list(rows[0])
        ws.append(headers)
        for row in rows:
            ws.append([row.get(h) for h in headers])
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(path)
    return path


def payload_from_snapshot(snapshot: dict) -> SheetPayload:
    """Convert a JSON snapshot into a sheet payload.

    Tabs come from ``config.types`` when present, else from
    ``config.tabs``/``config.tab_names``. Resources without a section,
    type or title are skipped.
    """
    payload = SheetPayload()

    for raw in snapshot.get("sections") or []:
        section = Section.from_row(raw if isinstance(raw, dict) else {})
        if not section.id:
            continue
        cfg = section.config
        payload.sections.append(
            SheetSection(
                id=section.id,
                name=section.name,
                icon=section.icon,
                color=section.color,
                intro=str(cfg.get("intro") or ""),
                visible=cfg.get("visible") is not False,
                order=_int(cfg.get("order") or 0),
            )
        )
        types = [t for t in cfg.get("types") or [] if isinstance(t, dict) and t.get("id")]
        if types:
            for index, t in enumerate(types, 1):
                payload.tabs.append(
                    SheetTab(
                        section_id=section.id,
                        id=str(t["id"]),
                        name=str(t.get("name") or ""),
                        icon=str(t.get("icon") or ""),
                        index=index,
                    )
                )
        else:
            names = cfg.get("tab_names") or []
            for index, tab in enumerate(cfg.get("tabs") or [], 1):
                payload.tabs.append(
                    SheetTab(
                        section_id=section.id,
                        id=str(tab),
                        name=str(names[index - 1]) if index <= len(names) else "",
                        index=index,
                    )
                )

    for sid, raw in iter_snapshot_resources(snapshot.get("resources")):
        resource = Resource.from_row(raw, section_id=sid)
        if not (resource.section_id and resource.type and resource.title):
            continue
        payload.resources.append(
            SheetResource(
                section_id=resource.section_id,
                type=resource.type.lower(),
                title=resource.title,
                description=resource.description,
                url=resource.url,
                category=resource.category or "",
                tags=list(resource.tags),
            )
        )

    return payload


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------


def resource_id_for(section_id: str, type_id: str, title: str, url: str) -> str:
    """Deterministic id so re-importing a row updates it in place."""
    key = merge_key({"title": title, "url": url})
    return str(uuid.uuid5(_RESOURCE_NAMESPACE, f"{section_id}|{type_id}|{key}"))


class SpreadsheetImporter:
    """Write a ``SheetPayload`` through the repository.

    Args:
        repository: CRUD facade; its config merger handles tab writes.
    """

    def __init__(self, repository: HubRepository) -> None:
        self.repo = repository
        self._known_sections: set[str] = set()
        self._known_types: dict[str, set[str]] = {}

    async def import_payload(
        self,
        payload: SheetPayload,
        on_progress: ProgressCallback | None = None,
    ) -> ImportSummary:
        """Upsert sections, then tabs, then resources.

        Raises:
            NotAuthenticatedError: Nobody is signed in.
            PermissionDeniedError: The actor is neither admin nor manager.
        """
        await self.repo.require_manager("import spreadsheets")
        self._known_sections = set()
        self._known_types = {}
        summary = ImportSummary()
        await emit_progress(
            on_progress,
            step=MigrationStep.START,
            counts={
                "sections": len(payload.sections),
                "tabs": len(payload.tabs),
                "resources": len(payload.resources),
            },
        )

        await self._import_sections(payload.sections, summary, on_progress)
        await self._import_tabs(payload.tabs, summary, on_progress)
        await self._import_resources(payload.resources, summary, on_progress)

        await emit_progress(on_progress, step=MigrationStep.DONE)
        logger.info(
            "Spreadsheet import: %d sections, %d tabs, %d resources written; %d errors",
            summary.sections_ok,
            summary.tabs_ok,
            summary.resources_ok,
            summary.total_errors,
        )
        return summary

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    async def _import_sections(self, sections, summary, on_progress) -> None:
        for row_no, s in enumerate(sections, 1):
            try:
                await self.repo.save_section(
                    Section(id=s.id, name=s.name or s.id, icon=s.icon, color=s.color),
                    include_config=False,
                    log=False,
                )
                saved = await self.repo.config_merger.save(
                    s.id, {"intro": s.intro, "visible": s.visible, "order": s.order}
                )
                if not saved:
                    raise RuntimeError("section config did not verify after write")
            except Exception as e:
                logger.warning("Section %s import failed: %s", s.id, e)
                summary.record_error("sections", RowError(row=row_no, id=s.id, error=str(e)))
                await emit_progress(
                    on_progress,
                    step=MigrationStep.WRITE_SECTIONS,
                    id=s.id,
                    status="error",
                    error=str(e),
                )
                continue
            self._known_sections.add(s.id)
            summary.record_ok("sections")
            await emit_progress(
                on_progress, step=MigrationStep.WRITE_SECTIONS, id=s.id, status="ok"
            )

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    async def _import_tabs(self, tabs, summary, on_progress) -> None:
        by_section: dict[str, list[SheetTab]] = {}
        for tab in tabs:
            by_section.setdefault(tab.section_id, []).append(tab)

        for row_no, (sid, rows) in enumerate(by_section.items(), 1):
            ordered = sorted(rows, key=lambda t: t.index)
            try:
                existing = await self.repo.get_section_config(sid) or {}
                partial = build_tab_config(
                    sid, [(t.id, t.name, t.icon) for t in ordered], existing
                )
                if not await self.repo.save_section_config(sid, partial):
                    raise RuntimeError("tab config did not verify after write")
            except Exception as e:
                logger.warning("Tabs for section %s failed: %s", sid, e)
                summary.record_error(
                    "tabs", RowError(row=row_no, section_id=sid, error=str(e))
                )
                await emit_progress(
                    on_progress,
                    step=MigrationStep.WRITE_SECTIONS,
                    section_id=sid,
                    status="error",
                    error=str(e),
                )
                continue
            self._known_sections.add(sid)
            self._known_types[sid] = set(partial["tabs"])
            summary.tabs_ok += len(partial["tabs"])
            await emit_progress(
                on_progress, step=MigrationStep.WRITE_SECTIONS, section_id=sid, status="ok"
            )

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def _ensure_section(self, section_id: str) -> None:
        if section_id in self._known_sections:
            return
        if await self.repo.get_section(section_id) is None:
            logger.info("Creating section %s referenced by a resource row", section_id)
            await self.repo.save_section(Section(id=section_id, name=section_id), log=False)
        self._known_sections.add(section_id)

    async def _ensure_type(
        self, section_id: str, type_id: str, display_name: str, summary: ImportSummary
    ) -> None:
        known = self._known_types.get(section_id)
        if known is not None and type_id in known:
            return
        cfg = await self.repo.get_section_config(section_id) or {}
        tabs = list(cfg.get("tabs") or [])
        types = [t for t in cfg.get("types") or [] if isinstance(t, dict)]
        known = set(tabs) | {str(t.get("id")) for t in types}
        if type_id not in known:
            names = list(cfg.get("tab_names") or [])
            partial = {
                "tabs": tabs + [type_id],
                "tab_names": names + [display_name],
                "types": types
                + [
                    {
                        "id": type_id,
                        "name": display_name,
                        "icon": "",
                        "key": f"{section_id}:{type_id}",
                    }
                ],
            }
            if not await self.repo.save_section_config(section_id, partial):
                raise RuntimeError(f"type {type_id} not stored in section {section_id}")
            summary.tabs_ok += 1
            known.add(type_id)
        self._known_types[section_id] = known

    async def _import_resources(self, resources, summary, on_progress) -> None:
        for row_no, r in enumerate(resources, 1):
            section_id = r.section_id or random_id("sec")
            original_type = r.type.strip()
            type_id = normalize_type_id(original_type)
            if not is_valid_type_id(type_id):
                type_id = random_id("t")

            try:
                await self._ensure_section(section_id)
                await self._ensure_type(
                    section_id, type_id, original_type or type_id, summary
                )
            except Exception as e:
                logger.warning(
                    "Could not prepare type %s in section %s: %s", type_id, section_id, e
                )
                summary.record_error(
                    "tabs",
                    RowError(row=row_no, id=type_id, section_id=section_id, error=str(e)),
                )

            title = r.title
            extra: dict[str, Any] = {
                "category": r.category,
                "originalType": original_type or None,
            }
            if not title:
                title = random_id("Untitled")
                extra["originalTitle"] = r.title

            resource = Resource(
                id=resource_id_for(section_id, type_id, title, r.url),
                section_id=section_id,
                type=type_id,
                title=title,
                description=r.description,
                url=r.url,
                tags=list(r.tags),
                extra=extra,
            )
            try:
                await self.repo.save_resource(resource, log=False)
            except Exception as e:
                logger.warning("Resource row %d (%s) failed: %s", row_no, title, e)
                summary.record_error(
                    "resources",
                    RowError(
                        row=row_no, id=resource.id, section_id=section_id, error=str(e)
                    ),
                )
                await emit_progress(
                    on_progress,
                    step=MigrationStep.WRITE_RESOURCES,
                    id=resource.id,
                    section_id=section_id,
                    status="error",
                    error=str(e),
                )
                continue
            summary.record_ok("resources")
            await emit_progress(
                on_progress,
                step=MigrationStep.WRITE_RESOURCES,
                id=resource.id,
                section_id=section_id,
                status="ok",
            )
