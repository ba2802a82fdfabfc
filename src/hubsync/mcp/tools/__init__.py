"""MCP tool handlers for workspace operations.

This package contains MCP tool implementations that wrap the
``HubRepository`` and migration engine with async handlers and
structured error responses.
"""

from .backup import BACKUP_SPECS, BACKUP_TOOLS
from .content import CONTENT_SPECS, CONTENT_TOOLS
from .errors import build_error_response, translate_store_error
from .registry import CAPABILITIES, ToolRegistry, ToolSpec

ALL_SPECS: list[ToolSpec] = CONTENT_SPECS + BACKUP_SPECS

__all__ = [
    "ALL_SPECS",
    "BACKUP_SPECS",
    "BACKUP_TOOLS",
    "CAPABILITIES",
    "CONTENT_SPECS",
    "CONTENT_TOOLS",
    "ToolRegistry",
    "ToolSpec",
    "build_error_response",
    "translate_store_error",
]
