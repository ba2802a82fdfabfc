"""Synchronous Supabase binding (PostgREST tables/RPC + GoTrue auth).

Every failure leaving this module is one of the typed errors from
``hubsync.errors``; ``requests`` exceptions never escape.
"""

import logging
import threading
from typing import Any

import requests

from ..config import Config
from ..errors import (
    InputValidationError,
    NotAuthenticatedError,
    PermissionDeniedError,
    StoreError,
    TransientNetworkError,
    is_transient_status,
)

logger = logging.getLogger(__name__)

# PostgREST code for a row-level security violation
_RLS_VIOLATION = "42501"

_FILTER_OPS = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "is", "in"})


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote_list_item(value: Any) -> str:
    text = _format_value(value)
    if any(ch in text for ch in ',()"'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def build_filter_params(filters: dict[str, Any] | None) -> dict[str, str]:
    """Translate a filter dict into PostgREST query parameters.

    A plain value means equality. A ``(op, value)`` tuple selects another
    operator; ``("in", [...])`` builds an ``in.(a,b)`` list.

    Raises:
        InputValidationError: On an unknown operator.
    """
    params: dict[str, str] = {}
    for column, spec in (filters or {}).items():
        if isinstance(spec, tuple):
            op, value = spec
            if op not in _FILTER_OPS:
                raise InputValidationError(f"Unsupported filter operator '{op}'")
            if op == "in":
                items = ",".join(_quote_list_item(v) for v in value)
                params[column] = f"in.({items})"
            else:
                params[column] = f"{op}.{_format_value(value)}"
        else:
            params[column] = f"eq.{_format_value(spec)}"
    return params


class StoreClient:
    """Thread-safe client for one Supabase project.

    Each worker thread gets its own ``requests.Session``; the signed-in
    access token is shared by all of them.
    """

    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self._sessions: list[requests.Session] = []
        self._lock = threading.Lock()
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._user: dict | None = None
        self.rest_url = f"{config.supabase_url.rstrip('/')}/rest/v1"
        self.auth_url = f"{config.supabase_url.rstrip('/')}/auth/v1"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @property
    def session(self) -> requests.Session:
        """Session for the current thread."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = not self.config.insecure
        session.headers.update(
            {
                "apikey": self.config.api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )
        with self._lock:
            self._sessions.append(session)
        return session

    def _auth_headers(self) -> dict[str, str]:
        token = self._access_token or self.config.api_key
        return {"Authorization": f"Bearer {token}"}

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: Any = None,
        headers: dict | None = None,
    ) -> Any:
        """Send one request and decode the JSON body.

        Raises:
            TransientNetworkError: Connection failure, timeout or 502/503/504.
            PermissionDeniedError: 401/403 or a row-level policy rejection.
            StoreError: Any other non-2xx response.
        """
        all_headers = self._auth_headers()
        if headers:
            all_headers.update(headers)
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=json,
                headers=all_headers,
                timeout=self.config.request_timeout,
            )
        except requests.Timeout as e:
            raise TransientNetworkError(f"Request timed out: {e}") from e
        except requests.ConnectionError as e:
            raise TransientNetworkError(f"Network error: {e}") from e

        self._raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.ok:
            return
        status = response.status_code
        code = None
        details = None
        message = response.reason or f"HTTP {status}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code") or body.get("error")
            details = body.get("details") or body.get("hint")
            message = (
                body.get("message")
                or body.get("msg")
                or body.get("error_description")
                or message
            )
        if code is not None:
            code = str(code)

        if status in (401, 403) or code == _RLS_VIOLATION:
            raise PermissionDeniedError(message, status, code, details)
        if is_transient_status(status):
            raise TransientNetworkError(message, status, code, details)
        raise StoreError(message, status, code, details)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order: str | list[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        single: bool = False,
    ) -> Any:
        """Read rows from *table*.

        Args:
            table: Table name.
            columns: PostgREST ``select`` expression.
            filters: See ``build_filter_params``.
            order: ``"col.asc"`` / ``"col.desc"`` or a list of them.
            limit: Maximum rows.
            offset: Rows to skip.
            single: Return the first row or ``None`` instead of a list.

        Returns:
            List of row dicts, or a single row dict / ``None``.
        """
        params = {"select": columns}
        params.update(build_filter_params(filters))
        if order:
            params["order"] = order if isinstance(order, str) else ",".join(order)
        if single:
            limit = 1
        if limit is not None:
            params["limit"] = str(limit)
        if offset:
            params["offset"] = str(offset)

        rows = self._request("GET", f"{self.rest_url}/{table}", params=params) or []
        if single:
            return rows[0] if rows else None
        return rows

    def insert(self, table: str, rows: dict | list[dict]) -> list[dict]:
        """Insert one or many rows and return them as stored."""
        return (
            self._request(
                "POST",
                f"{self.rest_url}/{table}",
                json=rows,
                headers={"Prefer": "return=representation"},
            )
            or []
        )

    def upsert(
        self,
        table: str,
        rows: dict | list[dict],
        on_conflict: str | None = None,
    ) -> list[dict]:
        """Insert or merge rows keyed on *on_conflict* (primary key if omitted)."""
        params = {"on_conflict": on_conflict} if on_conflict else None
        return (
            self._request(
                "POST",
                f"{self.rest_url}/{table}",
                params=params,
                json=rows,
                headers={
                    "Prefer": "resolution=merge-duplicates,return=representation"
                },
            )
            or []
        )

    def update(
        self, table: str, values: dict, filters: dict[str, Any]
    ) -> list[dict]:
        """Patch matching rows. Returns the updated rows (empty if none matched).

        Raises:
            InputValidationError: If *filters* is empty.
        """
        if not filters:
            raise InputValidationError("update requires at least one filter")
        return (
            self._request(
                "PATCH",
                f"{self.rest_url}/{table}",
                params=build_filter_params(filters),
                json=values,
                headers={"Prefer": "return=representation"},
            )
            or []
        )

    def delete(self, table: str, filters: dict[str, Any]) -> list[dict]:
        """Delete matching rows and return them.

        Raises:
            InputValidationError: If *filters* is empty.
        """
        if not filters:
            raise InputValidationError("delete requires at least one filter")
        return (
            self._request(
                "DELETE",
                f"{self.rest_url}/{table}",
                params=build_filter_params(filters),
                headers={"Prefer": "return=representation"},
            )
            or []
        )

    def rpc(self, function: str, params: dict | None = None) -> Any:
        """Call a Postgres function exposed at ``/rest/v1/rpc/<function>``."""
        return self._request(
            "POST", f"{self.rest_url}/rpc/{function}", json=params or {}
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def sign_in_with_password(self, email: str, password: str) -> dict:
        """Exchange credentials for a session and keep its access token.

        Returns:
            Session dict with ``access_token``, ``refresh_token`` and ``user``.
        """
        if not email or not password:
            raise InputValidationError("email and password are required")
        # Sign-in must go out with the anon key, not a stale token
        self._access_token = None
        data = self._request(
            "POST",
            f"{self.auth_url}/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        self._access_token = data.get("access_token")
        self._refresh_token = data.get("refresh_token")
        self._user = data.get("user")
        logger.info("Signed in as %s", email)
        return data

    def sign_out(self) -> None:
        """Revoke the current session. No-op when not signed in."""
        if self._access_token is None:
            return
        try:
            self._request("POST", f"{self.auth_url}/logout")
        finally:
            self._access_token = None
            self._refresh_token = None
            self._user = None

    def get_session(self) -> dict | None:
        if self._access_token is None:
            return None
        return {
            "access_token": self._access_token,
            "refresh_token": self._refresh_token,
            "user": self._user,
        }

    def get_user(self) -> dict | None:
        """Return the signed-in user from the identity provider, or ``None``."""
        if self._access_token is None:
            return None
        user = self._request("GET", f"{self.auth_url}/user")
        self._user = user
        return user

    def require_user(self) -> dict:
        """Like ``get_user`` but raises ``NotAuthenticatedError`` when signed out."""
        user = self.get_user()
        if not user or not user.get("id"):
            raise NotAuthenticatedError("Not signed in", status=401)
        return user

    def validate_connection(self) -> str:
        """Issue a minimal read to prove the store is reachable.

        Returns the REST endpoint URL.
        """
        self.select("sections", columns="section_id", limit=1)
        return self.rest_url

    def close(self) -> None:
        """Close every session opened by any thread."""
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._thread_local = threading.local()
