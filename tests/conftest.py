"""Shared pytest fixtures for hubsync tests."""

import copy
import itertools
import threading
from unittest.mock import AsyncMock

import pytest
from dotenv import load_dotenv

from hubsync.config import Config
from hubsync.core.realtime import LocalChangeFeed
from hubsync.core.retry import RetryableRemoteCall, RetryPolicy
from hubsync.errors import PermissionDeniedError, StoreError
from hubsync.repository import HubRepository

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live Supabase project",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live Supabase project"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# -------------------------------------------------------------------------
# In-memory store
# -------------------------------------------------------------------------

CONFLICT_KEYS = {
    "sections": ("section_id",),
    "resources": ("id",),
    "profiles": ("id",),
    "views": ("user_id", "resource_id"),
    "site_settings": ("key",),
}


class FakeStore:
    """In-memory stand-in for ``StoreClient``.

    Implements the table, RPC and identity methods the repository uses.
    Every write stamps ``updated_at`` with a monotonically increasing
    value so conditional updates behave like the real store. Resources
    must reference an existing section (foreign key).

    Failure injection: ``fail(op, table, when=..., error=...)`` makes
    matching calls raise. ``when`` receives the row (writes) or the
    filters (reads) and defaults to always.
    """

    rest_url = "https://fake.supabase.co/rest/v1"

    def __init__(self):
        self.tables: dict[str, list[dict]] = {t: [] for t in (*CONFLICT_KEYS, "activities")}
        self.calls: list[tuple[str, str]] = []
        self.current_user_id: str | None = None
        self.rpc_handlers: dict = {}
        self._failures: list = []
        self._clock = itertools.count(1)
        self._lock = threading.Lock()

    # -- helpers ---------------------------------------------------------

    def seed(self, table: str, *rows: dict) -> None:
        for row in rows:
            stored = dict(row)
            stored.setdefault("updated_at", self._stamp())
            self.tables[table].append(stored)

    def sign_in_as(self, user_id: str | None, role: str = "admin", **permissions) -> None:
        self.current_user_id = user_id
        if user_id and not any(p["id"] == user_id for p in self.tables["profiles"]):
            self.seed(
                "profiles",
                {"id": user_id, "username": user_id, "role": role, "permissions": permissions},
            )

    def fail(self, op: str, table: str, when=None, error: Exception | None = None, times=None):
        self._failures.append(
            {
                "op": op,
                "table": table,
                "when": when or (lambda _: True),
                "error": error or StoreError("injected failure", status=400),
                "times": times,
            }
        )

    def writes(self, table: str | None = None) -> list[tuple[str, str]]:
        return [
            c for c in self.calls
            if c[0] in ("insert", "upsert", "update", "delete")
            and (table is None or c[1] == table)
        ]

    def _stamp(self) -> str:
        return f"2026-01-01T00:00:{next(self._clock):06d}+00:00"

    def _check_failure(self, op: str, table: str, subject) -> None:
        for failure in self._failures:
            if failure["op"] != op or failure["table"] != table:
                continue
            if failure["times"] == 0 or not failure["when"](subject):
                continue
            if failure["times"] is not None:
                failure["times"] -= 1
            raise failure["error"]

    @staticmethod
    def _matches(row: dict, filters: dict | None) -> bool:
        for column, cond in (filters or {}).items():
            if isinstance(cond, tuple):
                op, value = cond
                if op == "in" and row.get(column) not in value:
                    return False
                if op == "neq" and row.get(column) == value:
                    return False
            elif row.get(column) != cond:
                return False
        return True

    def _check_foreign_keys(self, table: str, row: dict) -> None:
        if table != "resources":
            return
        if not any(s["section_id"] == row.get("section_id") for s in self.tables["sections"]):
            raise StoreError(
                'insert or update on table "resources" violates foreign key constraint',
                status=409,
                code="23503",
            )

    # -- table operations ------------------------------------------------

    def select(self, table, columns="*", filters=None, order=None, limit=None, offset=None, single=False):
        with self._lock:
            self.calls.append(("select", table))
            self._check_failure("select", table, filters or {})
            rows = [r for r in self.tables[table] if self._matches(r, filters)]
            if order:
                column, _, direction = order.partition(".")
                rows.sort(key=lambda r: str(r.get(column) or ""), reverse=direction == "desc")
            start = offset or 0
            rows = rows[start : start + limit] if limit is not None else rows[start:]
            rows = copy.deepcopy(rows)
        if single:
            return rows[0] if rows else None
        return rows

    def insert(self, table, rows):
        items = rows if isinstance(rows, list) else [rows]
        out = []
        with self._lock:
            self.calls.append(("insert", table))
            for row in items:
                self._check_failure("insert", table, row)
                stored = dict(row)
                stored.setdefault("id", f"{table}-{next(self._clock)}")
                stored["updated_at"] = self._stamp()
                self.tables[table].append(stored)
                out.append(copy.deepcopy(stored))
        return out

    def upsert(self, table, rows, on_conflict=None):
        items = rows if isinstance(rows, list) else [rows]
        keys = tuple(on_conflict.split(",")) if on_conflict else CONFLICT_KEYS[table]
        out = []
        with self._lock:
            self.calls.append(("upsert", table))
            for row in items:
                self._check_failure("upsert", table, row)
                self._check_foreign_keys(table, row)
                existing = next(
                    (r for r in self.tables[table] if all(r.get(k) == row.get(k) for k in keys)),
                    None,
                )
                if existing is None:
                    existing = {}
                    self.tables[table].append(existing)
                existing.update(copy.deepcopy(row))
                existing["updated_at"] = self._stamp()
                out.append(copy.deepcopy(existing))
        return out

    def update(self, table, values, filters):
        out = []
        with self._lock:
            self.calls.append(("update", table))
            self._check_failure("update", table, filters)
            for row in self.tables[table]:
                if self._matches(row, filters):
                    row.update(copy.deepcopy(values))
                    row["updated_at"] = self._stamp()
                    out.append(copy.deepcopy(row))
        return out

    def delete(self, table, filters):
        with self._lock:
            self.calls.append(("delete", table))
            self._check_failure("delete", table, filters)
            gone = [r for r in self.tables[table] if self._matches(r, filters)]
            self.tables[table] = [r for r in self.tables[table] if not self._matches(r, filters)]
        return copy.deepcopy(gone)

    def rpc(self, function, params=None):
        self.calls.append(("rpc", function))
        self._check_failure("rpc", function, params or {})
        if function in self.rpc_handlers:
            return self.rpc_handlers[function](params or {})
        if function == "increment_view":
            with self._lock:
                for row in self.tables["views"]:
                    if (row["user_id"], row["resource_id"]) == (
                        params["p_user_id"],
                        params["p_resource_id"],
                    ):
                        row["count"] = row.get("count", 0) + 1
                        return None
                self.tables["views"].append(
                    {"user_id": params["p_user_id"], "resource_id": params["p_resource_id"], "count": 1}
                )
            return None
        raise StoreError(f"Could not find the function public.{function}", status=404, code="PGRST202")

    # -- identity --------------------------------------------------------

    def get_user(self):
        self.calls.append(("auth", "user"))
        if self.current_user_id is None:
            return None
        return {"id": self.current_user_id}

    def validate_connection(self):
        return self.rest_url


# -------------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def mock_config():
    """Create a valid Config instance for testing."""
    return Config(
        supabase_url="https://abc.supabase.co",
        api_key="anon-test-key",
    )


@pytest.fixture
def store():
    """Empty in-memory store with nobody signed in."""
    return FakeStore()


@pytest.fixture
def admin_store(store):
    """In-memory store with an admin signed in as ``admin-1``."""
    store.sign_in_as("admin-1", role="admin")
    return store


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def retry(no_sleep):
    """Retry wrapper with the default budget and no real sleeping."""
    return RetryableRemoteCall(RetryPolicy(), sleep=no_sleep)


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def repository(admin_store, retry, feed):
    """HubRepository over the admin in-memory store."""
    return HubRepository(admin_store, retry, feed, page_size=2, activity_timeout=1.0)


@pytest.fixture
def permission_error():
    return PermissionDeniedError(
        "new row violates row-level security policy", status=403, code="42501"
    )
