"""Tests for bounded retries."""
from __future__ import annotations

import pytest

from vpsctl.errors import CommandError, HostUnreachable
from vpsctl.retry import call_with_retry, is_retryable


class Flaky:
    """Callable failing with ``error`` a fixed number of times."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_network_errors_are_retried_with_backoff() -> None:
    """Delays double between attempts."""
    sleeps: list[float] = []
    func = Flaky(2, HostUnreachable("connection reset", host="vps1"))

    result = call_with_retry(func, attempts=3, delay=0.5, sleep=sleeps.append)

    assert result == "ok"
    assert func.calls == 3
    assert sleeps == [0.5, 1.0]


def test_last_failure_propagates() -> None:
    """An exhausted budget re-raises the final error."""
    func = Flaky(5, HostUnreachable("connection reset"))

    with pytest.raises(HostUnreachable):
        call_with_retry(func, attempts=2, delay=0, sleep=lambda _: None)

    assert func.calls == 2


def test_non_retryable_errors_fail_immediately() -> None:
    """Command failures are not network-class and are not retried."""
    func = Flaky(1, CommandError("apt-get exited 100", returncode=100))

    with pytest.raises(CommandError):
        call_with_retry(func, attempts=3, delay=1.0, sleep=lambda _: None)

    assert func.calls == 1
    assert is_retryable(HostUnreachable("x")) is True
    assert is_retryable(ValueError("x")) is False


def test_attempts_must_be_positive() -> None:
    """At least one attempt is required."""
    with pytest.raises(ValueError):
        call_with_retry(lambda: None, attempts=0, delay=0)
