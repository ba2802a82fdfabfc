"""Backup, restore and spreadsheet import tools for MCP server.

Defines four tools, all requiring the ``manage`` capability:

- ``hub_export`` -- write a full snapshot to a JSON file.
- ``hub_import`` -- restore a snapshot file with per-row isolation.
- ``hub_import_sheet`` -- import sections/tabs/resources from an
  ``.xlsx`` workbook, CSV sheets, inline rows, or a snapshot file.
- ``hub_sheet_template`` -- write an ``.xlsx`` import template.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import mcp.types as types

from ...errors import InputValidationError
from ...repository import HubRepository
from ...sync.migration import MigrationEngine, dump_snapshot, load_snapshot
from ...sync.reporter import (
    format_export_totals,
    format_import_summary,
    summary_to_json,
)
from ...sync.spreadsheet import (
    SpreadsheetImporter,
    parse_workbook,
    payload_from_snapshot,
    read_csv_workbook,
    read_xlsx_workbook,
    write_xlsx_template,
)
from .errors import build_text_response
from .registry import ToolSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


BACKUP_TOOLS: list[types.Tool] = [
    types.Tool(
        name="hub_export",
        description=(
            "Export users, sections, resources, activities, views and site settings "
            "to one JSON snapshot file. Families that cannot be read are exported empty."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": (
                        "Output file (default: hub-backup-<UTC timestamp>.json in the working directory)"
                    ),
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="hub_import",
        description=(
            "Restore a JSON snapshot: sections, resources, views, site settings, then users. "
            "Failed rows are reported and skipped. Activities are never restored."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Snapshot file produced by hub_export (required)",
                },
            },
            "required": ["path"],
        },
    ),
    types.Tool(
        name="hub_import_sheet",
        description=(
            "Import sections, tabs and resources from an .xlsx workbook or a directory "
            "holding Sections.csv, Tabs.csv and Resources.csv, from inline sheet rows, "
            "or from a snapshot file. "
            "Missing sections and tabs referenced by resources are created."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "workbook": {
                    "type": "string",
                    "description": ".xlsx file with Sections, Tabs and Resources sheets",
                },
                "directory": {
                    "type": "string",
                    "description": "Directory with the CSV sheets",
                },
                "snapshot_path": {
                    "type": "string",
                    "description": "JSON snapshot to convert and import",
                },
                "sheets": {
                    "type": "object",
                    "description": "Inline rows keyed by sheet name (Sections, Tabs, Resources)",
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="hub_sheet_template",
        description=(
            "Write an .xlsx import template with Sections, Tabs, Resources and Readme "
            "sheets, each holding an example row."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": (
                        "Output file (default: hub-import-template.xlsx in the working directory)"
                    ),
                },
            },
            "required": [],
        },
    ),
]


# ---------------------------------------------------------------------------
# Individual handlers
# ---------------------------------------------------------------------------


def _default_export_path() -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return Path.cwd() / f"hub-backup-{stamp}.json"


async def _handle_hub_export(
    repository: HubRepository, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``hub_export`` tool."""
    await repository.require_manager("export data")
    path = Path(args["path"]) if args.get("path") else _default_export_path()
    snapshot = await MigrationEngine(repository).export_raw_state()
    written = dump_snapshot(snapshot, path)
    logger.info("Snapshot written to %s", written)
    text = f"{format_export_totals(snapshot)}\nWritten to {written}"
    return build_text_response(
        text,
        {
            "path": str(written),
            "exportDate": snapshot["exportDate"],
            "totalRecords": snapshot["totalRecords"],
        },
    )


async def _handle_hub_import(
    repository: HubRepository, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``hub_import`` tool."""
    path = str(args.get("path") or "").strip()
    if not path:
        raise InputValidationError("path is required")
    snapshot = load_snapshot(path)
    summary = await MigrationEngine(repository).import_raw_state(snapshot)
    await repository.log_activity(
        "RESTORE",
        title=f"Restore from {Path(path).name}",
        metadata={"ok": summary.total_ok, "errors": summary.total_errors},
    )
    return build_text_response(
        format_import_summary(summary, title="Restore"),
        summary_to_json(summary),
    )


_SHEET_SOURCES = ("workbook", "directory", "snapshot_path", "sheets")


async def _handle_hub_import_sheet(
    repository: HubRepository, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``hub_import_sheet`` tool."""
    sources = [k for k in _SHEET_SOURCES if args.get(k)]
    if len(sources) != 1:
        raise InputValidationError(
            "Provide exactly one of workbook, directory, snapshot_path or sheets"
        )

    match sources[0]:
        case "workbook":
            payload = read_xlsx_workbook(args["workbook"])
        case "directory":
            payload = read_csv_workbook(args["directory"])
        case "snapshot_path":
            payload = payload_from_snapshot(load_snapshot(args["snapshot_path"]))
        case _:
            sheets = args["sheets"]
            if not isinstance(sheets, dict):
                raise InputValidationError("sheets must be an object of row lists")
            payload = parse_workbook(sheets)

    summary = await SpreadsheetImporter(repository).import_payload(payload)
    await repository.log_activity(
        "IMPORT_SHEET",
        title="Spreadsheet import",
        metadata={"ok": summary.total_ok, "errors": summary.total_errors},
    )
    return build_text_response(
        format_import_summary(summary, title="Spreadsheet import"),
        summary_to_json(summary),
    )


async def _handle_hub_sheet_template(
    repository: HubRepository, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``hub_sheet_template`` tool."""
    path = Path(args["path"]) if args.get("path") else Path.cwd() / "hub-import-template.xlsx"
    written = write_xlsx_template(path)
    logger.info("Import template written to %s", written)
    return build_text_response(
        f"Import template written to {written}", {"path": str(written)}
    )


_MANAGE = frozenset({"manage"})

_HANDLERS = {
    "hub_export": _handle_hub_export,
    "hub_import": _handle_hub_import,
    "hub_import_sheet": _handle_hub_import_sheet,
    "hub_sheet_template": _handle_hub_sheet_template,
}

BACKUP_SPECS: list[ToolSpec] = [
    ToolSpec(tool=tool, capabilities=_MANAGE, handler=_HANDLERS[tool.name])
    for tool in BACKUP_TOOLS
]
