"""ToolSpec and ToolRegistry for capability-based tool filtering.

This module provides a centralized registry for MCP tools that supports
filtering based on the signed-in actor's workspace capabilities, so an
agent running under a viewer account never sees write or restore tools.

Key concepts:
- ToolSpec: Immutable dataclass linking a Tool definition, required capabilities,
  and an async handler with standardized signature (repository, args) -> CallToolResult.
- ToolRegistry: Filters specs by allowed capabilities at construction time,
  then provides list_tools() and call_tool() dispatch with error translation.
- CAPABILITIES: The capability names a Profile can grant (read, edit, manage).
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import mcp.types as types

from ...errors import ExportError, StoreError
from ...repository import HubRepository

logger = logging.getLogger(__name__)

CAPABILITIES = frozenset({"read", "edit", "manage"})


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Immutable definition of a single MCP tool.

    Attributes:
        tool: The MCP Tool definition (name, description, inputSchema).
        capabilities: Capabilities required to use this tool.
            Empty frozenset means the tool is always available.
        handler: Async handler with signature (repository, args) -> CallToolResult.
    """

    tool: types.Tool
    capabilities: frozenset[str]
    handler: Callable[[HubRepository, dict], Awaitable[types.CallToolResult]]


class ToolRegistry:
    """Registry of ToolSpecs with optional capability-based filtering.

    If allowed_capabilities is None, all specs are included. Otherwise, a
    spec is included only if:
    - its capabilities set is empty (always available), or
    - its capabilities are a subset of allowed_capabilities.
    """

    def __init__(
        self,
        specs: list[ToolSpec],
        allowed_capabilities: frozenset[str] | None = None,
    ):
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            unknown = spec.capabilities - CAPABILITIES
            if unknown:
                raise ValueError(
                    f"Tool {spec.tool.name} requires unknown capabilities: {sorted(unknown)}"
                )
            if (
                allowed_capabilities is None
                or not spec.capabilities
                or spec.capabilities <= allowed_capabilities
            ):
                self._specs[spec.tool.name] = spec

    def list_tools(self) -> list[types.Tool]:
        """Return list of types.Tool for all registered (permitted) specs."""
        return [spec.tool for spec in self._specs.values()]

    def tool_count(self) -> int:
        """Return number of registered tools."""
        return len(self._specs)

    async def call_tool(
        self,
        name: str,
        arguments: dict | None,
        repository: HubRepository,
    ) -> types.CallToolResult:
        """Dispatch tool call to registered handler.

        Provides centralized error handling for store errors, validation
        errors, and unexpected exceptions, translating them into structured
        CallToolResult responses with corrective actions.

        Args:
            name: Tool name to invoke.
            arguments: Tool arguments (may be None).
            repository: Repository the handler works through.

        Returns:
            CallToolResult from the handler.

        Raises:
            ValueError: If tool name is not registered (unknown or filtered out).
        """
        from .errors import build_error_response, translate_store_error

        spec = self._specs.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")
        args = arguments or {}
        try:
            return await spec.handler(repository, args)
        except StoreError as e:
            logger.warning("Store error in %s: %s", name, e)
            return translate_store_error(e)
        except ExportError as e:
            logger.warning("Export failed in %s: %s", name, e)
            return build_error_response(
                "server_error",
                str(e),
                "No table could be read. Check that the signed-in account can read the workspace.",
            )
        except (ValueError, FileNotFoundError) as e:
            return build_error_response(
                "validation_error",
                str(e),
                "Check parameter values and retry.",
            )
        except Exception as e:
            logger.exception("Unexpected error in tool %s", name)
            return build_error_response(
                "server_error",
                str(e),
                "Retry later or contact the workspace admin.",
            )
