"""Tests for hubsync.mcp.lifespan -- server startup/shutdown lifecycle.

Tests the server_lifespan() async context manager which:
- Loads config from env vars (with optional CLI overrides)
- Creates the store client, signs in and validates the connection
- Initializes concurrency semaphore
- Connects the realtime change feed, falling back to polling
- Fails fast on config errors or connection failures
- Prints status messages to stderr
"""

from contextlib import ExitStack
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hubsync.config import Config
from hubsync.core.realtime import LocalChangeFeed
from hubsync.mcp.lifespan import server_lifespan
from hubsync.repository import HubRepository

_MOD = "hubsync.mcp.lifespan"

# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------


def _make_config(**overrides):
    """Create a valid Config for testing."""
    defaults = {
        "supabase_url": "https://abc.supabase.co",
        "api_key": "anon-key",
        "max_parallel_requests": 5,
    }
    defaults.update(overrides)
    return Config(**defaults)


class _Patched:
    """Patches every collaborator of server_lifespan() in one place."""

    def __init__(self, config=None, run_sync_result="https://abc.supabase.co/rest/v1",
                 load_error=None, connect_error=None, realtime_error=None):
        self.config = config or _make_config()
        self.client = MagicMock()
        self.stderr: list[str] = []
        self._run_sync_result = run_sync_result
        self._load_error = load_error
        self._connect_error = connect_error
        self.feed = MagicMock(url="wss://abc.supabase.co/realtime/v1")
        self.feed.connect = AsyncMock(side_effect=realtime_error)
        self.feed.close = AsyncMock()
        self._stack = ExitStack()

    def __enter__(self):
        p = self._stack.enter_context
        self.load_config = p(patch(
            f"{_MOD}.load_config",
            return_value=self.config,
            side_effect=self._load_error,
        ))
        p(patch(f"{_MOD}.discover_config_files", return_value=[]))
        p(patch(f"{_MOD}.load_dotenv"))
        self.init_client = p(patch(
            f"{_MOD}.init_client",
            return_value=self.client,
            side_effect=self._connect_error,
        ))
        self.run_sync = p(patch(f"{_MOD}.run_sync", return_value=self._run_sync_result))
        self.init_semaphore = p(patch(f"{_MOD}.init_semaphore"))
        self.close_client = p(patch(f"{_MOD}.close_client"))
        self.feed_cls = p(patch(f"{_MOD}.SupabaseChangeFeed", return_value=self.feed))
        p(patch(f"{_MOD}._stderr_print", side_effect=self.stderr.append))
        return self

    def __exit__(self, *exc):
        return self._stack.__exit__(*exc)


# -------------------------------------------------------------------------
# server_lifespan() -- successful startup
# -------------------------------------------------------------------------


class TestServerLifespanSuccess:
    """Tests for the happy path through server_lifespan()."""

    async def test_successful_startup(self):
        with _Patched() as mocks:
            async with server_lifespan() as ctx:
                assert ctx["client"] is mocks.client
                assert ctx["config"] is mocks.config
                assert isinstance(ctx["repository"], HubRepository)
                mocks.run_sync.assert_called_once_with(mocks.client.validate_connection)
                mocks.init_semaphore.assert_called_once_with(5)

    async def test_semaphore_uses_max_parallel_from_config(self):
        with _Patched(config=_make_config(max_parallel_requests=12)) as mocks:
            async with server_lifespan():
                mocks.init_semaphore.assert_called_once_with(12)

    async def test_repository_uses_config_page_size(self):
        with _Patched(config=_make_config(page_size=25)):
            async with server_lifespan() as ctx:
                assert ctx["repository"].page_size == 25

    async def test_signs_in_when_credentials_configured(self):
        config = _make_config(email="ops@example.com", password="pw")
        with _Patched(config=config) as mocks:
            async with server_lifespan():
                first = mocks.run_sync.call_args_list[0]
                assert first.args == (
                    mocks.client.sign_in_with_password,
                    "ops@example.com",
                    "pw",
                )
        assert any("Signed in as ops@example.com" in m for m in mocks.stderr)

    async def test_startup_with_config_overrides(self):
        overrides = {"url": "https://cli.supabase.co", "api_key": "k", "insecure": True}
        with _Patched() as mocks:
            async with server_lifespan(config_overrides=overrides):
                pass
        kwargs = mocks.load_config.call_args.kwargs
        assert kwargs["url"] == "https://cli.supabase.co"
        assert kwargs["api_key"] == "k"
        assert kwargs["insecure"] is True
        assert kwargs["yaml_fallbacks"] is None

    async def test_success_stderr_messages_full_sequence(self):
        with _Patched() as mocks:
            async with server_lifespan():
                pass
        text = "\n".join(mocks.stderr)
        assert "starting" in text.lower()
        assert "Supabase URL: https://abc.supabase.co" in text
        assert "Connected to https://abc.supabase.co/rest/v1" in text
        assert "Server ready" in text


# -------------------------------------------------------------------------
# server_lifespan() -- configuration errors
# -------------------------------------------------------------------------


class TestServerLifespanConfigError:
    async def test_config_error_raises_runtime_error(self):
        with _Patched(load_error=ValueError("Supabase URL not found")) as mocks:
            with pytest.raises(RuntimeError, match="Configuration error: Supabase URL not found"):
                async with server_lifespan():
                    pass
        mocks.init_client.assert_not_called()

    async def test_config_error_stderr_messages(self):
        with _Patched(load_error=ValueError("bad")) as mocks:
            with pytest.raises(RuntimeError):
                async with server_lifespan():
                    pass
        assert any("Configuration error" in m for m in mocks.stderr)
        assert any("HUB_SUPABASE_URL" in m for m in mocks.stderr)


# -------------------------------------------------------------------------
# server_lifespan() -- connection errors
# -------------------------------------------------------------------------


class TestServerLifespanConnectionError:
    async def test_connection_error_raises_runtime_error(self):
        with _Patched(connect_error=ConnectionError("Connection refused")) as mocks:
            with pytest.raises(RuntimeError, match="Store connection failed: Connection refused"):
                async with server_lifespan():
                    pass
        mocks.close_client.assert_called_once_with()
        assert any("Connection refused" in m for m in mocks.stderr)

    async def test_validation_failure_also_caught(self):
        with _Patched() as mocks:
            mocks.run_sync.side_effect = Exception("401 invalid api key")
            with pytest.raises(RuntimeError, match="HUB_SUPABASE_KEY"):
                async with server_lifespan():
                    pass
        mocks.init_semaphore.assert_not_called()


# -------------------------------------------------------------------------
# server_lifespan() -- shutdown
# -------------------------------------------------------------------------


class TestServerLifespanShutdown:
    async def test_shutdown_closes_client(self):
        with _Patched() as mocks:
            async with server_lifespan():
                mocks.close_client.assert_not_called()
            mocks.close_client.assert_called_once_with()
        assert any("shutting down" in m for m in mocks.stderr)

    async def test_shutdown_runs_on_body_error(self):
        with _Patched() as mocks:
            with pytest.raises(KeyError):
                async with server_lifespan():
                    raise KeyError("boom")
            mocks.close_client.assert_called_once_with()

    async def test_shutdown_closes_realtime_feed(self):
        with _Patched() as mocks:
            async with server_lifespan():
                mocks.feed.close.assert_not_awaited()
            mocks.feed.close.assert_awaited_once_with()


# -------------------------------------------------------------------------
# server_lifespan() -- realtime change feed
# -------------------------------------------------------------------------


class TestServerLifespanRealtime:
    async def test_feed_connected_and_shared_with_repository(self):
        with _Patched() as mocks:
            mocks.client.get_session.return_value = {"access_token": "jwt"}
            async with server_lifespan() as ctx:
                assert ctx["feed"] is mocks.feed
                assert ctx["repository"].feed is mocks.feed
        mocks.feed_cls.assert_called_once_with(
            "https://abc.supabase.co", "anon-key", access_token="jwt"
        )
        mocks.feed.connect.assert_awaited_once_with()
        assert any("Realtime: wss://abc.supabase.co/realtime/v1" in m for m in mocks.stderr)

    async def test_realtime_disabled_uses_local_feed(self):
        with _Patched(config=_make_config(realtime=False)) as mocks:
            async with server_lifespan() as ctx:
                assert isinstance(ctx["feed"], LocalChangeFeed)
        mocks.feed_cls.assert_not_called()

    async def test_connect_failure_falls_back_to_polling(self):
        with _Patched(realtime_error=OSError("socket closed")) as mocks:
            async with server_lifespan() as ctx:
                assert isinstance(ctx["feed"], LocalChangeFeed)
        mocks.feed.close.assert_not_awaited()
        assert any("Realtime unavailable (socket closed)" in m for m in mocks.stderr)
