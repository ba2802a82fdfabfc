"""Lifespan management for MCP server startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from ..config import load_config
from ..config_loader import discover_config_files, load_hierarchical_config
from ..config_schema import build_config
from ..core.async_utils import init_semaphore, run_sync
from ..core.handle import close_client, init_client
from ..core.realtime import ChangeFeed, LocalChangeFeed, SupabaseChangeFeed
from ..core.retry import RetryableRemoteCall, RetryPolicy
from ..repository import HubRepository

logger = logging.getLogger(__name__)

_ENV_HINT = "Ensure HUB_SUPABASE_URL and HUB_SUPABASE_KEY are set."


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


async def _open_change_feed(config, client) -> tuple[ChangeFeed, SupabaseChangeFeed | None]:
    """Connect Supabase Realtime, or fall back to the in-process feed.

    Returns the feed for the repository and the realtime feed to close
    on shutdown (``None`` when realtime is off or unreachable).
    """
    if not config.realtime:
        logger.info("Realtime disabled; refreshes rely on polling")
        return LocalChangeFeed(), None
    session = client.get_session() or {}
    feed = SupabaseChangeFeed(
        config.supabase_url,
        config.api_key,
        access_token=session.get("access_token"),
    )
    try:
        await feed.connect()
    except Exception as e:
        logger.warning("Realtime unavailable, refreshes rely on polling: %s", e)
        _stderr_print(f"  Realtime unavailable ({e}); polling only")
        return LocalChangeFeed(), None
    _stderr_print(f"  Realtime: {feed.url}")
    return feed, feed


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (as fallback values)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Create the shared store client, sign in when credentials are set
    - Fail fast if the store is unreachable or sign-in is rejected
    - Connect the Supabase Realtime change feed (polling only if that fails)

    On shutdown:
    - Close the realtime feed, sign out and close the shared client

    Args:
        config_overrides: Optional dict with config values from CLI
            (url, api_key, email, password, insecure, debug)

    Yields:
        Dict with 'client', 'repository', 'config' and 'feed' keys

    Raises:
        RuntimeError: If configuration is invalid or the store connection fails.
    """
    logger.info("MCP server starting...")
    _stderr_print("hubsync MCP server starting...")

    try:
        load_dotenv()

        yaml_fallbacks: dict[str, Any] | None = None
        config_files = discover_config_files()
        sources = []

        if config_files:
            config_path = config_files[0]
            unified = build_config(load_hierarchical_config())
            yaml_fallbacks = unified.fallbacks()
            sources.append(f"config file: {config_path}")

        overrides = config_overrides or {}
        config = load_config(
            url=overrides.get("url"),
            api_key=overrides.get("api_key"),
            email=overrides.get("email"),
            password=overrides.get("password"),
            insecure=overrides.get("insecure", False),
            debug=overrides.get("debug", False),
            yaml_fallbacks=yaml_fallbacks,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
        logger.info("Supabase URL: %s", config.supabase_url)
        _stderr_print(f"  Supabase URL: {config.supabase_url}")
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print(f"  {_ENV_HINT}")
        raise RuntimeError(f"Configuration error: {e}. {_ENV_HINT}") from e

    logger.info("Validating store connection...")
    _stderr_print("  Validating store connection...")
    try:
        client = init_client(config)
        if config.email and config.password:
            await run_sync(client.sign_in_with_password, config.email, config.password)
            logger.info("Signed in as %s", config.email)
            _stderr_print(f"  Signed in as {config.email}")
        endpoint = await run_sync(client.validate_connection)
        logger.info("Connected to %s", endpoint)
        _stderr_print(f"  Connected to {endpoint}")
        init_semaphore(config.max_parallel_requests)
        _stderr_print(f"  Parallel requests: {config.max_parallel_requests}")
        _stderr_print("Server ready. Waiting for MCP client connection...")
    except Exception as e:
        logger.error("Failed to connect to the store: %s", e)
        _stderr_print("ERROR: Store connection failed.")
        _stderr_print(f"  {e}")
        close_client()
        raise RuntimeError(
            f"Store connection failed: {e}. Check HUB_SUPABASE_URL, HUB_SUPABASE_KEY, "
            "HUB_EMAIL and HUB_PASSWORD."
        ) from e

    feed, realtime_feed = await _open_change_feed(config, client)
    repository = HubRepository(
        client,
        retry=RetryableRemoteCall(RetryPolicy.from_config(config)),
        feed=feed,
        page_size=config.page_size,
        activity_timeout=config.activity_timeout,
    )

    try:
        yield {"client": client, "repository": repository, "config": config, "feed": feed}
    finally:
        logger.info("MCP server shutting down")
        _stderr_print("hubsync MCP server shutting down.")
        if realtime_feed is not None:
            await realtime_feed.close()
        close_client()
