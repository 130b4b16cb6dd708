"""Probe execution harness: reachability first, then independent checks."""
from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from ..errors import CheckFailed, HostUnreachable
from ..retry import call_with_retry
from .checks import DEFAULT_CHECKS
from .models import (
    ALL_CHECKS,
    CheckDefinition,
    CheckKind,
    FactResult,
    FactStatus,
    ProbedHostState,
    ProbeScope,
)

if TYPE_CHECKING:
    from ..providers import HostProviders

_LOG = logging.getLogger(__name__)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _always(_: BaseException) -> bool:
    return True


class HostProber:
    """Gather a :class:`ProbedHostState` from a host without mutating it."""

    def __init__(
        self,
        providers: HostProviders,
        *,
        retries: int = 2,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        max_concurrency: int = 4,
        checks: Mapping[CheckKind, CheckDefinition] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the prober to a host and its retry budget."""
        self.providers = providers
        self.retries = retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.max_concurrency = max(1, max_concurrency)
        self.checks = dict(checks or DEFAULT_CHECKS)
        self._sleep = sleep

    @property
    def host(self) -> str:
        """Return the probed host."""
        return self.providers.host

    def ensure_reachable(self) -> None:
        """Raise :class:`HostUnreachable` once the retry budget is exhausted."""
        call_with_retry(
            lambda: self.providers.transport.run(["true"], timeout=self.timeout),
            attempts=self.retries + 1,
            delay=self.retry_delay,
            sleep=self._sleep,
            label=f"reachability of {self.host}",
        )

    def probe(
        self,
        checks: Iterable[CheckKind] = ALL_CHECKS,
        *,
        scope: ProbeScope | None = None,
    ) -> ProbedHostState:
        """Run ``checks`` against the host and return the gathered facts.

        An unreachable host is fatal. Any other failure is retried and, once
        the budget is spent, recorded as a partial fact for that check only.
        """
        scope = scope or ProbeScope()
        kinds = list(dict.fromkeys(checks))
        try:
            self.ensure_reachable()
        except HostUnreachable:
            raise
        except Exception as exc:
            raise HostUnreachable(
                f"Reachability check failed: {exc}", host=self.host
            ) from exc

        captured_at = datetime.now(UTC)
        facts: dict[CheckKind, FactResult] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_concurrency) as pool:
            futures = {
                kind: pool.submit(self._run_check, self.checks[kind], scope) for kind in kinds
            }
            for kind in kinds:
                facts[kind] = futures[kind].result()
        return ProbedHostState(host=self.host, captured_at=captured_at, facts=facts)

    def _run_check(self, definition: CheckDefinition, scope: ProbeScope) -> FactResult:
        attempts = 0
        start = time.perf_counter()

        def attempt() -> Mapping[str, object]:
            nonlocal attempts
            attempts += 1
            return definition.run(self.providers, scope)

        try:
            value = call_with_retry(
                attempt,
                attempts=self.retries + 1,
                delay=self.retry_delay,
                retry_on=_always,
                sleep=self._sleep,
                label=f"{definition.kind.value} check on {self.host}",
            )
        except Exception as exc:  # noqa: BLE001 - recorded as a partial fact
            failure = CheckFailed(
                f"{definition.kind.value} check failed: {exc}",
                host=self.host,
                resource=definition.kind.value,
            )
            _LOG.warning("%s", failure)
            return FactResult(
                kind=definition.kind,
                status=FactStatus.PARTIAL,
                error=str(failure),
                attempts=attempts,
                duration_ms=_duration_ms(start),
            )
        return FactResult(
            kind=definition.kind,
            status=FactStatus.OK,
            value=dict(value),
            attempts=attempts,
            duration_ms=_duration_ms(start),
        )


__all__ = ["HostProber"]
