from __future__ import annotations

import time
from threading import Event
from typing import Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import Cancelled, RuntimeUnavailable

T = TypeVar("T")


def _cancellable_sleep(cancel: Event | None) -> Callable[[float], None]:
    if cancel is None:
        return time.sleep

    def _sleep(seconds: float) -> None:
        if cancel.wait(seconds):
            raise Cancelled("Cancelled while waiting to retry.")

    return _sleep


def call_with_retries(
    fn: Callable[[], T],
    attempts: int = 3,
    backoff_s: float = 0.5,
    cancel: Event | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Call ``fn``, retrying RuntimeUnavailable with exponential backoff.

    Other errors propagate immediately. After the last attempt the
    RuntimeUnavailable is re-raised.
    """

    def _before_sleep(state: RetryCallState) -> None:
        if on_retry and state.outcome is not None:
            on_retry(state.attempt_number, state.outcome.exception())

    retrier = Retrying(
        retry=retry_if_exception_type(RuntimeUnavailable),
        stop=stop_after_attempt(max(1, int(attempts))),
        wait=wait_exponential(multiplier=max(0.0, backoff_s), min=0),
        sleep=_cancellable_sleep(cancel),
        before_sleep=_before_sleep,
        reraise=True,
    )
    return retrier(fn)
