"""Bounded retries with exponential backoff for network-class failures."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from .errors import VpsctlError

_LOG = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` for errors that may succeed on a later attempt."""
    return isinstance(exc, VpsctlError) and exc.retryable


def call_with_retry(
    func: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    backoff: float = 2.0,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``func`` up to ``attempts`` times, sleeping between failures.

    Only exceptions accepted by ``retry_on`` are retried; anything else, and the
    final failure, propagates unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    current_delay = delay
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as exc:
            if attempt == attempts or not retry_on(exc):
                raise
            _LOG.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, exc)
            if current_delay > 0:
                sleep(current_delay)
            current_delay *= backoff
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["call_with_retry", "is_retryable"]
