"""Tests for hubsync.errors -- taxonomy and transient classification."""

import pytest
import requests

from hubsync.errors import (
    InputValidationError,
    NotAuthenticatedError,
    PermissionDeniedError,
    StoreError,
    TransientNetworkError,
    is_transient,
    is_transient_status,
)


class TestTaxonomy:
    def test_store_error_fields(self):
        err = StoreError("boom", status=400, code="22P02", details="bad uuid")
        assert (str(err), err.status, err.code, err.details) == (
            "boom",
            400,
            "22P02",
            "bad uuid",
        )
        assert err.transient is False

    def test_transient_flag(self):
        assert TransientNetworkError("reset").transient is True

    def test_not_authenticated_is_permission_denied(self):
        assert isinstance(NotAuthenticatedError("no user"), PermissionDeniedError)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            raise InputValidationError("missing id")


class TestIsTransient:
    @pytest.mark.parametrize(
        "exc",
        [
            TransientNetworkError("x"),
            requests.ConnectionError("reset"),
            requests.Timeout("slow"),
            TimeoutError(),
            ConnectionResetError(),
            RuntimeError("getaddrinfo ENOTFOUND abc.supabase.co"),
            RuntimeError("NetworkError when attempting to fetch resource."),
            RuntimeError("net::ERR_NAME_NOT_RESOLVED"),
        ],
    )
    def test_transient(self, exc):
        assert is_transient(exc) is True

    @pytest.mark.parametrize(
        "exc",
        [
            StoreError("duplicate key", status=409),
            PermissionDeniedError("rls", status=403, code="42501"),
            InputValidationError("bad"),
            ValueError("failed to fetch"),
            TypeError("x"),
            RuntimeError("something else"),
        ],
    )
    def test_permanent(self, exc):
        assert is_transient(exc) is False

    def test_typed_flag_beats_message(self):
        assert is_transient(StoreError("failed to fetch", status=400)) is False


@pytest.mark.parametrize(
    "status, expected",
    [(502, True), (503, True), (504, True), (500, False), (404, False), (None, False)],
)
def test_is_transient_status(status, expected):
    assert is_transient_status(status) is expected
