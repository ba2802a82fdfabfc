"""Async utilities for bridging the synchronous store binding into asyncio."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Module-level semaphore, initialized at server startup
_semaphore: asyncio.Semaphore | None = None

# Strong references to abandoned tasks so they are not garbage collected
_detached: set[asyncio.Task] = set()


def init_semaphore(max_parallel: int = 2) -> None:
    """Initialize the concurrency semaphore. Call once at startup."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info(
        "Store request semaphore initialized: max_parallel=%d",
        max_parallel,
    )


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous function in a worker thread.

    Does NOT acquire the semaphore.

    Example:
        rows = await run_sync(client.select, "sections", order="name.asc")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a worker thread, bounded by the semaphore.

    Falls back to unbounded if the semaphore is not initialized.
    """
    if _semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with _semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
) -> list[T]:
    """Run coroutines concurrently and return results in input order.

    Each coroutine should use run_sync_limited internally. The first
    exception propagates.
    """
    return list(await asyncio.gather(*coros))


def _log_late_failure(task: asyncio.Task) -> None:
    _detached.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Abandoned call failed after timeout: %s", exc)


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    default: T | None = None,
) -> T | None:
    """Await *awaitable* for at most *timeout* seconds.

    On timeout the call is abandoned, not cancelled: it keeps running in
    the background and a later failure is only logged. ``default`` is
    returned in that case. Exceptions raised within the timeout propagate.
    """
    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()
    logger.debug("Call exceeded %.2fs, continuing without it", timeout)
    _detached.add(task)
    task.add_done_callback(_log_late_failure)
    return default
