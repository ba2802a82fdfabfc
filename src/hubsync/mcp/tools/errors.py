"""Error response builders and shared utilities for MCP tool handlers.

This module provides structured error responses with corrective actions
to help AI agents recover from errors without human intervention, plus
the translation of store errors into those responses.
"""

import json
from typing import Any

import mcp.types as types

from ...errors import (
    NotAuthenticatedError,
    PermissionDeniedError,
    StoreError,
    TransientNetworkError,
)


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (permission_denied, validation_error,
            network_error, server_error, unknown_tool)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("validation_error", "section_id is required", "Pass section_id.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


def build_text_response(
    text: str, structured: dict[str, Any] | None = None
) -> types.CallToolResult:
    """Successful result with text and optional structured content."""
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=structured,
    )


def to_json_text(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


# ---------------------------------------------------------------------------
# Store error translation
# ---------------------------------------------------------------------------

_ACTIONS = {
    "not_authenticated": "Set HUB_EMAIL and HUB_PASSWORD so the server can sign in, then restart it.",
    "permission_denied": (
        "Ask a workspace admin for the required rights (admin role, "
        "canManageUsers or canEditAllSections)."
    ),
    "network_error": "The store could not be reached after retries. Check connectivity and retry later.",
    "server_error": "Check the request parameters; if they are correct, retry later or contact the workspace admin.",
}


def translate_store_error(error: StoreError) -> types.CallToolResult:
    """Translate a typed store error into a structured error response."""
    detail = str(error)
    if error.code:
        detail = f"{detail} (code {error.code})"

    match error:
        case NotAuthenticatedError():
            return build_error_response(
                "permission_denied", detail, _ACTIONS["not_authenticated"]
            )
        case PermissionDeniedError():
            return build_error_response(
                "permission_denied", detail, _ACTIONS["permission_denied"]
            )
        case TransientNetworkError():
            return build_error_response(
                "network_error", detail, _ACTIONS["network_error"]
            )
        case _:
            return build_error_response(
                "server_error", detail, _ACTIONS["server_error"]
            )
