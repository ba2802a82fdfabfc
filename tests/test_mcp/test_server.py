"""Tests for hubsync.mcp.server -- ping, capability resolution and CLI parsing."""

from unittest.mock import MagicMock, patch

import mcp.types as types
import pytest

import hubsync.mcp.server as server_mod
from hubsync.errors import TransientNetworkError
from hubsync.mcp.server import (
    PING_SPEC,
    build_parser,
    get_registry,
    get_repository,
    handle_call_tool,
    resolve_capabilities,
    set_registry,
    set_repository,
)
from hubsync.mcp.tools import ALL_SPECS, ToolRegistry
from hubsync.repository import HubRepository


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


@pytest.fixture
def installed(repository):
    """Install repository and a full registry as the server globals."""
    set_repository(repository)
    set_registry(ToolRegistry([PING_SPEC] + ALL_SPECS))
    yield repository
    set_repository(None)
    set_registry(None)


# ---------------------------------------------------------------------------
# Ping
# ---------------------------------------------------------------------------


class TestPing:
    async def test_reports_endpoint_and_user(self, repository):
        result = await PING_SPEC.handler(repository, {})

        assert not result.isError
        assert _text(result) == (
            "hubsync connected to https://fake.supabase.co/rest/v1 (signed in as admin-1)."
        )

    async def test_anonymous(self, store, retry):
        result = await PING_SPEC.handler(HubRepository(store, retry), {})

        assert "(anonymous)" in _text(result)

    async def test_connection_failure(self, repository):
        with patch.object(
            repository.client, "validate_connection", side_effect=TransientNetworkError("down")
        ):
            result = await PING_SPEC.handler(repository, {})

        assert result.isError
        assert "Store connection failed: down" in _text(result)

    def test_always_available(self):
        assert PING_SPEC.capabilities == frozenset()


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class TestResolveCapabilities:
    async def test_admin(self, repository):
        assert await resolve_capabilities(repository) == frozenset({"read", "edit", "manage"})

    async def test_viewer(self, repository, store):
        store.sign_in_as("v-1", role="viewer")
        assert await resolve_capabilities(repository) == frozenset({"read"})

    async def test_user_manager(self, repository, store):
        store.sign_in_as("m-1", role="viewer", canManageUsers=True)
        assert await resolve_capabilities(repository) == frozenset({"read", "manage"})

    async def test_anonymous_read_only(self, repository, store):
        store.sign_in_as(None)
        assert await resolve_capabilities(repository) == frozenset({"read"})

    async def test_disabled_account_gets_nothing(self, repository, store):
        store.sign_in_as("d-1", role="editor", disabled=True)
        assert await resolve_capabilities(repository) == frozenset()

    async def test_unreadable_profile_read_only(self, repository, store, permission_error):
        store.fail("select", "profiles", error=permission_error)
        assert await resolve_capabilities(repository) == frozenset({"read"})


# ---------------------------------------------------------------------------
# Globals and dispatch
# ---------------------------------------------------------------------------


class TestGlobals:
    def test_uninitialized_accessors_raise(self):
        with pytest.raises(RuntimeError, match="HubRepository not initialized"):
            get_repository()
        with pytest.raises(RuntimeError, match="ToolRegistry not initialized"):
            get_registry()

    async def test_call_tool_dispatches(self, installed):
        result = await handle_call_tool("ping", None)
        assert "hubsync connected" in _text(result)

    async def test_unknown_tool(self, installed):
        result = await handle_call_tool("section_delete", {})

        assert result.isError
        assert "Error (unknown_tool): Unknown tool: section_delete" in _text(result)

    async def test_list_tools(self, installed):
        names = {t.name for t in await server_mod.handle_list_tools()}
        assert {"ping", "section_list", "hub_export"} <= names


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestBuildParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.url is None
        assert args.insecure is False
        assert args.log_file == "/tmp/hubsync.log"

    def test_overrides(self):
        args = build_parser().parse_args(
            ["--url", "https://abc.supabase.co", "--key", "k", "--email", "a@b.c", "--insecure"]
        )
        assert (args.url, args.key, args.email, args.insecure) == (
            "https://abc.supabase.co",
            "k",
            "a@b.c",
            True,
        )

    def test_init_config_flag(self):
        assert build_parser().parse_args(["--init-config"]).init_config is True


class TestRun:
    @patch("hubsync.mcp.server.ensure_config")
    @patch("hubsync.mcp.server.asyncio.run")
    def test_init_config_does_not_start_server(self, mock_run, mock_ensure, monkeypatch, tmp_path):
        mock_ensure.return_value = tmp_path / ".hubsync" / "config.yml"
        monkeypatch.setattr("sys.argv", ["hubsync-mcp", "--init-config"])

        server_mod.run()

        mock_ensure.assert_called_once_with()
        mock_run.assert_not_called()

    @patch("hubsync.mcp.server.main", new_callable=MagicMock)
    @patch("hubsync.mcp.server.asyncio.run")
    def test_cli_overrides_passed_to_main(self, mock_run, mock_main, monkeypatch):
        monkeypatch.setattr(
            "sys.argv", ["hubsync-mcp", "--url", "https://abc.supabase.co", "--insecure"]
        )

        server_mod.run()

        mock_main.assert_called_once_with(
            config_overrides={
                "url": "https://abc.supabase.co",
                "insecure": True,
                "log_file": "/tmp/hubsync.log",
            }
        )
        mock_run.assert_called_once_with(mock_main.return_value)

    @patch("hubsync.mcp.server.main", new_callable=MagicMock)
    @patch("hubsync.mcp.server.asyncio.run", side_effect=RuntimeError("config"))
    def test_startup_failure_exits_1(self, _mock_run, _mock_main, monkeypatch):
        monkeypatch.setattr("sys.argv", ["hubsync-mcp"])

        with pytest.raises(SystemExit) as exc_info:
            server_mod.run()

        assert exc_info.value.code == 1
