"""MCP Server for workspace sync and migration using stdio transport.

This module implements the Model Context Protocol server that enables
AI agents to read workspace sections and resources, merge section
configs, and run backups, restores and spreadsheet imports.

Transport: stdio
Protocol: JSON-RPC 2.0 over MCP

The tools offered depend on the signed-in account: every account gets
the read tools, editors get config writes, admins and user managers get
export/import.
"""

import argparse
import asyncio
import logging
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..config_loader import ensure_config
from ..core.async_utils import run_sync
from ..errors import StoreError
from ..logger import DEFAULT_LOG_FILE, setup_logging
from ..repository import HubRepository
from .lifespan import server_lifespan
from .tools import ALL_SPECS, ToolRegistry, build_error_response
from .tools.registry import ToolSpec

logger = logging.getLogger(__name__)

# Initialize server instance
server = Server("hubsync")

# Global repository instance (initialized in lifespan)
_repository: HubRepository | None = None

# Global registry instance (initialized in main)
_registry: ToolRegistry | None = None


# ---------------------------------------------------------------------------
# Ping tool (always available)
# ---------------------------------------------------------------------------


async def _handle_ping(
    repository: HubRepository, args: dict
) -> types.CallToolResult:
    """Handle ping tool -- test store connectivity."""
    try:
        endpoint = await run_sync(repository.client.validate_connection)
        user_id = await repository.get_current_user_id()
    except Exception as e:
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=f"Store connection failed: {e}. Check HUB_SUPABASE_URL and HUB_SUPABASE_KEY.",
                )
            ],
            isError=True,
        )
    who = f"signed in as {user_id}" if user_id else "anonymous"
    return types.CallToolResult(
        content=[
            types.TextContent(
                type="text",
                text=f"hubsync connected to {endpoint} ({who}).",
            )
        ]
    )


PING_SPEC = ToolSpec(
    tool=types.Tool(
        name="ping",
        description="Test store connectivity and report the signed-in user",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    capabilities=frozenset(),
    handler=_handle_ping,
)


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def get_repository() -> HubRepository:
    """Get the global HubRepository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if _repository is None:
        raise RuntimeError(
            "HubRepository not initialized. Server lifespan not started."
        )
    return _repository


def set_repository(repository: HubRepository | None) -> None:
    global _repository
    _repository = repository


def get_registry() -> ToolRegistry:
    """Get the global ToolRegistry instance.

    Raises:
        RuntimeError: If registry is not initialized
    """
    if _registry is None:
        raise RuntimeError("ToolRegistry not initialized.")
    return _registry


def set_registry(registry: ToolRegistry | None) -> None:
    global _registry
    _registry = registry


async def resolve_capabilities(repository: HubRepository) -> frozenset[str]:
    """Capabilities of the signed-in profile; read-only when anonymous.

    A profile that cannot be read also yields read-only.
    """
    try:
        profile = await repository.get_current_profile()
    except StoreError as e:
        logger.warning("Could not load the signed-in profile, read-only tools only: %s", e)
        return frozenset({"read"})
    if profile is None:
        return frozenset({"read"})
    return profile.capabilities()


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """Return all registered (and permitted) tools from the ToolRegistry."""
    return get_registry().list_tools()


@server.call_tool()
async def handle_call_tool(
    name: str, arguments: dict | None
) -> types.CallToolResult:
    """Handle tool execution via ToolRegistry dispatch.

    Args:
        name: The name of the tool to execute.
        arguments: Tool arguments (optional).

    Returns:
        CallToolResult with tool output content and optional isError flag.
    """
    repository = get_repository()
    try:
        return await get_registry().call_tool(name, arguments, repository)
    except ValueError as e:
        # Unknown or filtered-out tool name
        return build_error_response(
            "unknown_tool",
            str(e),
            "Use list_tools to see available tools.",
        )


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def main(config_overrides: dict | None = None):
    """Run the MCP server with stdio transport.

    Sets up logging for MCP mode (file only, never stdout), connects to
    the store via the lifespan manager, registers the tools the signed-in
    account may use, and serves JSON-RPC over stdio.

    Args:
        config_overrides: Optional dict with config values to override
            (url, api_key, email, password, insecure, log_file)
    """
    log_file = (
        config_overrides.get("log_file") if config_overrides else None
    )

    # Must run before stdio_server so nothing reaches stdout
    setup_logging(mode="mcp", log_file=log_file)

    async with server_lifespan(
        config_overrides=config_overrides
    ) as ctx:
        repository: HubRepository = ctx["repository"]
        capabilities = await resolve_capabilities(repository)

        all_specs = [PING_SPEC] + ALL_SPECS
        registry = ToolRegistry(all_specs, capabilities)
        logger.info(
            "Registered %d tools (of %d total) for capabilities %s",
            registry.tool_count(),
            len(all_specs),
            sorted(capabilities),
        )
        print(
            f"Capabilities: {', '.join(sorted(capabilities)) or 'none'} "
            f"({registry.tool_count()} of {len(all_specs)} tools enabled)",
            file=sys.stderr,
        )

        set_registry(registry)
        set_repository(repository)
        try:
            async with mcp.server.stdio.stdio_server() as (
                read_stream,
                write_stream,
            ):
                init_options = InitializationOptions(
                    server_name="hubsync",
                    server_version=__version__,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                )
                await server.run(
                    read_stream, write_stream, init_options
                )
        finally:
            set_repository(None)
            set_registry(None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="hubsync MCP server - workspace sync, backup and restore tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or .hubsync/config.yml)
  hubsync-mcp

  # Override the project URL and key
  hubsync-mcp --url https://abc.supabase.co --key <anon key>

  # Sign in as a workspace account
  hubsync-mcp --email admin@example.com

  # Custom log file location
  hubsync-mcp --log-file /var/log/hubsync.log

Note: This server uses stdio transport for JSON-RPC communication with MCP clients.
All user-facing messages are written to stderr. Do not pipe stdin/stdout manually.
        """,
    )

    parser.add_argument(
        "--url",
        help="Override Supabase project URL (takes precedence over HUB_SUPABASE_URL and config files)",
    )
    parser.add_argument(
        "--key",
        help="Override Supabase API key (takes precedence over HUB_SUPABASE_KEY and config files)",
    )
    parser.add_argument(
        "--email",
        help="Account to sign in as (takes precedence over HUB_EMAIL)",
    )
    parser.add_argument(
        "--password",
        help="Password for --email"
        " (visible in process list -- prefer HUB_PASSWORD env var for security)",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument(
        "--log-file",
        default=DEFAULT_LOG_FILE,
        help=f"Log file path (default: {DEFAULT_LOG_FILE})",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a starter .hubsync/config.yml (if no config file exists) and exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"hubsync version {__version__}",
    )
    return parser


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args()

    if args.init_config:
        path = ensure_config()
        print(f"Config file: {path}", file=sys.stderr)
        return

    config_overrides = {}
    if args.url:
        config_overrides["url"] = args.url
    if args.key:
        config_overrides["api_key"] = args.key
    if args.email:
        config_overrides["email"] = args.email
    if args.password:
        config_overrides["password"] = args.password
    if args.insecure:
        config_overrides["insecure"] = True
    if args.log_file:
        config_overrides["log_file"] = args.log_file

    if config_overrides:
        override_keys = [
            k for k in config_overrides if k not in ("password", "api_key")
        ]
        print(
            f"Config overrides from CLI: {', '.join(override_keys)}",
            file=sys.stderr,
        )

    try:
        asyncio.run(
            main(
                config_overrides=config_overrides
                if config_overrides
                else None
            )
        )
    except RuntimeError:
        # Error already printed to stderr by lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
