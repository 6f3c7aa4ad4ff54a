import time

import pytest

from relaymgr.errors import InstallCanceledError, OperationFailedError, TimedOutError
from relaymgr.poller import CancelToken, sleep_or_cancel, wait_until_terminal
from relaymgr.types import AsyncOperation


def scripted(*statuses, detail=None):
    """fetch_status returning the given statuses in order and recording calls."""
    remaining = list(statuses)
    calls = []

    def fetch(operation_id):
        calls.append(operation_id)
        return AsyncOperation(id=operation_id, status=remaining.pop(0), detail=detail)

    return fetch, calls


def test_returns_once_succeeded():
    fetch, calls = scripted("pending", "pending", "succeeded")
    operation = wait_until_terminal("op-1", fetch, interval=0)
    assert operation.status == "succeeded"
    assert calls == ["op-1", "op-1", "op-1"]


def test_failure_carries_provider_payload():
    fetch, _ = scripted("pending", "failed", detail={"error": "quota exceeded"})
    with pytest.raises(OperationFailedError) as exc_info:
        wait_until_terminal("op-2", fetch, interval=0)
    assert exc_info.value.operation_id == "op-2"
    assert exc_info.value.payload == {"error": "quota exceeded"}


def test_times_out_when_deadline_passes():
    fetch, calls = scripted(*["pending"] * 5)
    with pytest.raises(TimedOutError):
        wait_until_terminal("op-3", fetch, interval=0.05, timeout=0)
    assert len(calls) == 1


def test_cancelled_token_stops_before_fetching():
    token = CancelToken()
    token.cancel()
    fetch, calls = scripted("succeeded")
    with pytest.raises(InstallCanceledError):
        wait_until_terminal("op-4", fetch, interval=0, cancel=token)
    assert calls == []


def test_cancel_between_polls():
    token = CancelToken()
    calls = []

    def fetch(operation_id):
        calls.append(operation_id)
        token.cancel()
        return AsyncOperation(id=operation_id, status="pending")

    with pytest.raises(InstallCanceledError):
        wait_until_terminal("op-5", fetch, interval=0, cancel=token)
    assert len(calls) == 1


def test_cancel_wakes_a_sleeping_wait():
    token = CancelToken()
    token.cancel()
    start = time.monotonic()
    with pytest.raises(InstallCanceledError):
        sleep_or_cancel(30, token)
    assert time.monotonic() - start < 5


def test_sleep_without_token_returns():
    sleep_or_cancel(0, None)
