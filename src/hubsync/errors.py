"""Typed error taxonomy for store operations.

The store binding (``core.client``) translates every transport failure
into one of these classes, so callers can branch on type instead of on
message text:

- ``TransientNetworkError`` -- retried automatically by
  ``RetryableRemoteCall``.
- ``PermissionDeniedError`` -- the server refused the write; surfaced
  verbatim, never retried.
- ``InputValidationError`` -- malformed input caught before any remote
  call.
- ``StoreError`` -- any other rejection from the store.

``is_transient`` only falls back to substring matching for exceptions
that did not come through the binding.
"""

from __future__ import annotations

import re
from typing import Any

import requests


class HubSyncError(Exception):
    """Base class for all hubsync errors."""


class StoreError(HubSyncError):
    """The remote store rejected or failed a request.

    Attributes:
        status: HTTP status code, or ``None`` for transport failures.
        code: Store-specific error code (PostgREST ``code`` field).
        details: Extra detail text returned by the store.
        transient: Whether retrying the same call may succeed.
    """

    transient: bool = False

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details


class TransientNetworkError(StoreError):
    """Connection reset, name resolution failure, timeout or gateway error."""

    transient = True


class PermissionDeniedError(StoreError):
    """Write rejected for lack of rights (HTTP 401/403 or row policy)."""


class NotAuthenticatedError(PermissionDeniedError):
    """No signed-in actor is available for an operation that needs one."""


class InputValidationError(HubSyncError, ValueError):
    """Malformed input rejected before any remote call."""


class ExportError(HubSyncError):
    """No record family could be read during export."""


_TRANSIENT_STATUSES = frozenset({502, 503, 504})

_TRANSIENT_PATTERN = re.compile(
    r"failed to fetch|networkerror|err_name_not_resolved|enotfound|econnreset|etimedout",
    re.IGNORECASE,
)


def is_transient_status(status: int | None) -> bool:
    """Return True for gateway statuses that indicate a retryable outage."""
    return status in _TRANSIENT_STATUSES


def is_transient(exc: BaseException) -> bool:
    """Classify an exception as transient (retryable) or permanent.

    Typed errors are checked first. Message matching only applies to
    exceptions from outside the store binding.
    """
    if isinstance(exc, StoreError):
        return exc.transient
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (InputValidationError, ValueError, TypeError, KeyError)):
        return False
    return bool(_TRANSIENT_PATTERN.search(str(exc)))
