"""Retrying flushes that fail for transient reasons."""

from __future__ import annotations

import socket
import time
from datetime import timedelta
from typing import Any, Callable, Iterator, Protocol, TypeVar

T = TypeVar("T")

_RETRYABLE_PATTERNS = (
    "connection refused",
    "connection reset",
    "i/o timeout",
    "no such host",
    "network is unreachable",
    "broken pipe",
)

_NETWORK_ERRORS = (ConnectionError, TimeoutError, socket.gaierror, socket.herror)

# Highest doubling applied to the initial delay, so the wait stays finite.
_MAX_BACKOFF_SHIFT = 62


class CommitError(Exception):
    """A failure while committing a batch.

    The server may already have stored the data, so it is never retried.
    """

    def __init__(self, err: BaseException) -> None:
        super().__init__(f"commit error: {err}")
        self.err = err
        self.__cause__ = err


class _Waiter(Protocol):
    def wait(self, timeout: float | None = None) -> bool:
        ...


def _chain(err: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def is_retryable_error(err: BaseException | None) -> bool:
    """Tell whether ``err`` looks transient: EOF, network trouble or a known message.

    The error and every error it was raised from are examined; a CommitError
    anywhere in that chain makes it not retryable.
    """
    if err is None:
        return False
    chain = list(_chain(err))
    if any(isinstance(e, CommitError) for e in chain):
        return False
    if any(isinstance(e, EOFError) for e in chain):
        return True
    if any(isinstance(e, _NETWORK_ERRORS) for e in chain):
        return True
    messages = [str(e).lower() for e in chain]
    return any(pattern in message for message in messages for pattern in _RETRYABLE_PATTERNS)


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _backoff_delay(retry: int, delay: float, max_delay: float) -> float:
    wait = delay * (2 ** min(retry, _MAX_BACKOFF_SHIFT))
    if max_delay > 0 and wait > max_delay:
        return max_delay
    return wait


def retry_call(
    func: Callable[[], T],
    attempts: int = 1,
    delay: float | timedelta = 0.0,
    max_delay: float | timedelta = 0.0,
    should_retry: Callable[[BaseException], bool] | None = is_retryable_error,
    on_retry: Callable[[int, BaseException], Any] | None = None,
    stop_event: _Waiter | None = None,
) -> T:
    """Call ``func`` until it succeeds and return its result.

    ``attempts`` counts the first call too; 0 means no limit. Waits double
    from ``delay`` and are capped by ``max_delay`` when it is positive. An
    error that ``should_retry`` rejects, or the error of the last attempt, is
    raised. ``on_retry(n, err)`` runs before the n-th retry (counting from 0).
    When ``stop_event`` is set during a wait, the last error is raised.
    """
    if attempts < 0:
        raise ValueError(f"attempts must be non-negative, got {attempts}")
    base = _seconds(delay)
    cap = _seconds(max_delay)

    retry = 0
    while True:
        try:
            return func()
        except Exception as err:
            if should_retry is not None and not should_retry(err):
                raise
            if attempts and retry >= attempts - 1:
                raise
            if on_retry is not None:
                on_retry(retry, err)
            wait = _backoff_delay(retry, base, cap)
            retry += 1
            if stop_event is not None:
                if stop_event.wait(wait):
                    raise
            elif wait > 0:
                time.sleep(wait)