"""Content tool handlers for MCP server.

This module implements the section, resource and activity tools: listing
and reading sections, merging a partial section config, listing a
section's resources and reading the activity log. Handlers work through
the ``HubRepository`` and return both text and structured content.
"""

from typing import Any

import mcp.types as types

from ...errors import InputValidationError
from ...repository import HubRepository
from ...sync.merge_key import merge_records
from .errors import build_error_response, build_text_response, to_json_text
from .registry import ToolSpec

# Tool definitions for list_tools()
CONTENT_TOOLS = [
    types.Tool(
        name="section_list",
        description="List all sections with id, name, icon and tab ids.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True
        ),
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    types.Tool(
        name="section_get",
        description="Get one section including its full config (tabs, tab_names, types, categories, intro, visible, order).",
        annotations=types.ToolAnnotations(
            readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "section_id": {
                    "type": "string",
                    "description": "Section id (required)",
                },
            },
            "required": ["section_id"],
        },
    ),
    types.Tool(
        name="section_config_save",
        description=(
            "Merge a partial config into a section. Non-empty arrays (tabs, tab_names, "
            "types, categories) replace the stored ones; empty or missing arrays keep them. "
            "Scalars (intro, visible, order) replace when given. Other keys are kept."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False, destructiveHint=False, idempotentHint=True, openWorldHint=True
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "section_id": {
                    "type": "string",
                    "description": "Section id (required)",
                },
                "config": {
                    "type": "object",
                    "description": "Partial config to merge",
                },
            },
            "required": ["section_id", "config"],
        },
    ),
    types.Tool(
        name="resource_list",
        description="List resources of a section, optionally one type only. Duplicates of the same title and URL are collapsed to the newest.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "section_id": {
                    "type": "string",
                    "description": "Section id (required)",
                },
                "type": {
                    "type": "string",
                    "description": "Tab/type id filter (optional)",
                },
            },
            "required": ["section_id"],
        },
    ),
    types.Tool(
        name="activity_list",
        description="List activity log entries, newest first.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "description": "Maximum entries (default: 50, max: 1000)",
                    "default": 50,
                },
                "offset": {
                    "type": "integer",
                    "description": "Entries to skip (default: 0)",
                    "default": 0,
                },
            },
            "required": [],
        },
    ),
]


def _require(args: dict, key: str) -> str:
    value = str(args.get(key) or "").strip()
    if not value:
        raise InputValidationError(f"{key} is required")
    return value


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_section_list(
    repository: HubRepository, args: dict
) -> types.CallToolResult:
    sections = await repository.get_all_sections()
    items: list[dict[str, Any]] = []
    lines = [f"{len(sections)} sections:"]
    for row in sections:
        config = row.get("config") if isinstance(row.get("config"), dict) else {}
        tabs = list(config.get("tabs") or [])
        items.append(
            {
                "section_id": row.get("section_id"),
                "name": row.get("name"),
                "icon": row.get("icon"),
                "tabs": tabs,
            }
        )
        tab_text = ", ".join(tabs) if tabs else "no tabs"
        lines.append(f"- {row.get('section_id')}: {row.get('name') or ''} ({tab_text})")
    return build_text_response("\n".join(lines), {"sections": items})


async def _handle_section_get(
    repository: HubRepository, args: dict
) -> types.CallToolResult:
    section_id = _require(args, "section_id")
    row = await repository.get_section(section_id)
    if row is None:
        return build_error_response(
            "not_found",
            f"Section '{section_id}' not found",
            "Use section_list to see existing section ids.",
        )
    return build_text_response(to_json_text(row), {"section": row})


async def _handle_section_config_save(
    repository: HubRepository, args: dict
) -> types.CallToolResult:
    section_id = _require(args, "section_id")
    partial = args.get("config")
    if not isinstance(partial, dict):
        raise InputValidationError("config must be an object")
    stored = await repository.save_section_config(section_id, partial)
    if not stored:
        return build_error_response(
            "consistency_warning",
            f"Config for '{section_id}' was written but the stored value differs, "
            "probably because of a concurrent edit.",
            f"Read the section with section_get(section_id='{section_id}') and retry if needed.",
        )
    await repository.log_activity(
        "UPDATE_SECTION_CONFIG",
        section_id=section_id,
        title=f"Config of {section_id}",
        metadata={"keys": sorted(partial)},
    )
    config = await repository.get_section_config(section_id)
    return build_text_response(
        f"Config of section '{section_id}' saved.", {"config": config}
    )


async def _handle_resource_list(
    repository: HubRepository, args: dict
) -> types.CallToolResult:
    section_id = _require(args, "section_id")
    type_id = str(args.get("type") or "").strip()
    if type_id:
        rows = await repository.get_resources_by_type(section_id, type_id)
    else:
        rows = await repository.get_resources_by_section(section_id)
    resources = merge_records(rows)
    lines = [f"{len(resources)} resources in {section_id}:"]
    for r in resources:
        lines.append(f"- [{r.get('type')}] {r.get('title')} {r.get('url') or ''}".rstrip())
    return build_text_response("\n".join(lines), {"resources": resources})


async def _handle_activity_list(
    repository: HubRepository, args: dict
) -> types.CallToolResult:
    try:
        limit = int(args.get("limit", 50))
        offset = int(args.get("offset", 0))
    except (TypeError, ValueError):
        raise InputValidationError("limit and offset must be integers") from None
    if not 1 <= limit <= 1000 or offset < 0:
        raise InputValidationError("limit must be 1-1000 and offset non-negative")
    activities = await repository.get_activities(limit=limit, offset=offset)
    lines = [f"{len(activities)} activities:"]
    for a in activities:
        when = a.get("timestamp") or a.get("created_at") or ""
        who = a.get("username") or "unknown"
        what = a.get("description") or a.get("title") or ""
        lines.append(f"- {when} {who} {a.get('action')} {what}".rstrip())
    return build_text_response("\n".join(lines), {"activities": activities})


_HANDLERS = {
    "section_list": (frozenset({"read"}), _handle_section_list),
    "section_get": (frozenset({"read"}), _handle_section_get),
    "section_config_save": (frozenset({"edit"}), _handle_section_config_save),
    "resource_list": (frozenset({"read"}), _handle_resource_list),
    "activity_list": (frozenset({"read"}), _handle_activity_list),
}

CONTENT_SPECS: list[ToolSpec] = [
    ToolSpec(tool=tool, capabilities=_HANDLERS[tool.name][0], handler=_HANDLERS[tool.name][1])
    for tool in CONTENT_TOOLS
]
