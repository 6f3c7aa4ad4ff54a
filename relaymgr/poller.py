"""Polling of provider long-running operations."""

import threading
import time
from typing import Callable

from .errors import InstallCanceledError, OperationFailedError, TimedOutError
from .types import AsyncOperation
from .utils import logger


class CancelToken:
    """Thread-safe cancellation flag with an interruptible sleep."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise InstallCanceledError("Server creation was cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if cancelled."""
        return self._event.wait(seconds)


def sleep_or_cancel(seconds: float, cancel: CancelToken | None) -> None:
    if cancel is None:
        if seconds > 0:
            time.sleep(seconds)
        return
    if seconds > 0:
        cancel.wait(seconds)
    cancel.raise_if_cancelled()


def wait_until_terminal(
    operation_id: str,
    fetch_status: Callable[[str], AsyncOperation],
    *,
    interval: float = 1.0,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
) -> AsyncOperation:
    """Poll an operation until it succeeds or fails.

    :param operation_id: Provider operation/action id
    :param fetch_status: Callable returning the current AsyncOperation
    :param interval: Seconds between fetches
    :param timeout: Give up after this many seconds (None waits forever)
    :param cancel: Token checked before every fetch
    :return: The succeeded operation
    :raises OperationFailedError: If the provider reports failure
    :raises TimedOutError: If the deadline passes first
    :raises InstallCanceledError: If the token is cancelled
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        attempt += 1
        operation = fetch_status(operation_id)
        if operation.status == "succeeded":
            logger.debug(f"Operation '{operation_id}' succeeded after {attempt} polls")
            return operation
        if operation.status == "failed":
            raise OperationFailedError(operation_id, operation.detail)
        if deadline is not None and time.monotonic() + interval > deadline:
            raise TimedOutError(
                f"Operation '{operation_id}' still pending after {timeout}s"
            )
        sleep_or_cancel(interval, cancel)
