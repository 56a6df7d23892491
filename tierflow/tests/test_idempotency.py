"""
tierflow/tests/test_idempotency.py
Tests for idempotency key management.
"""

import pytest
from tierflow.core.idempotency import (
    check_and_set,
    clear_all_keys,
    get_result,
    release,
    store_result,
)


@pytest.fixture(params=["database", "memory"])
def backend(request, monkeypatch):
    """Run each test against the table and the in-memory fallback."""
    if request.param == "memory":
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    clear_all_keys()
    yield request.param
    clear_all_keys()


def test_check_and_set_first_time(backend):
    assert check_and_set("key-1", "test_op") is False


def test_check_and_set_duplicate(backend):
    check_and_set("key-2", "test_op")
    assert check_and_set("key-2", "test_op") is True


def test_keys_are_independent(backend):
    check_and_set("key-3", "test_op")
    assert check_and_set("key-3b", "test_op") is False


def test_result_is_none_while_in_flight(backend):
    check_and_set("key-4", "test_op")
    assert get_result("key-4") is None


def test_store_and_replay_result(backend):
    check_and_set("key-5", "test_op")
    store_result("key-5", {"status": "CANCELED"})
    assert get_result("key-5") == {"status": "CANCELED"}


def test_release_allows_retry(backend):
    check_and_set("key-6", "test_op")
    release("key-6")
    assert get_result("key-6") is None
    assert check_and_set("key-6", "test_op") is False


def test_clear_all_keys(backend):
    check_and_set("key-7", "test_op")
    check_and_set("key-8", "test_op")
    clear_all_keys()
    assert check_and_set("key-7", "test_op") is False
    assert check_and_set("key-8", "test_op") is False
