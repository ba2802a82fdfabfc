"""Process-wide store client lifecycle.

Components receive the client explicitly; this module only owns the one
shared instance for entry points: create once, reuse, tear down.
"""

import logging
import threading

from ..config import Config
from .client import StoreClient

logger = logging.getLogger(__name__)

_client: StoreClient | None = None
_lock = threading.Lock()


def init_client(config: Config) -> StoreClient:
    """Create the shared client, or return it if already built for *config*.

    Raises:
        RuntimeError: If a client exists for a different configuration.
    """
    global _client
    with _lock:
        if _client is not None:
            if _client.config == config:
                return _client
            raise RuntimeError(
                "Store client already initialized with a different configuration. "
                "Call close_client() first."
            )
        _client = StoreClient(config)
        logger.info("Store client initialized for %s", config.supabase_url)
        return _client


def get_client() -> StoreClient:
    """Return the shared client.

    Raises:
        RuntimeError: If ``init_client`` has not been called.
    """
    if _client is None:
        raise RuntimeError("Store client not initialized. Call init_client() first.")
    return _client


def close_client() -> None:
    """Sign out, close sessions and forget the shared client."""
    global _client
    with _lock:
        client, _client = _client, None
    if client is None:
        return
    try:
        client.sign_out()
    except Exception as e:
        logger.warning("Sign-out during shutdown failed: %s", e)
    client.close()
    logger.info("Store client closed")
