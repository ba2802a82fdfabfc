"""Core store binding, retry and async bridging shared by all entry points."""

from .async_utils import run_sync
from .client import StoreClient
from .retry import RetryableRemoteCall, RetryPolicy

__all__ = ["RetryPolicy", "RetryableRemoteCall", "StoreClient", "run_sync"]
