"""Rollout controller: pull, swap, health-check and roll back containers.

A rollout moves through::

    pending -> pulling -> swapping -> health-checking -> stable
                                          |
                                          +-> rolling-back -> rolled-back

``failed`` ends a rollout that was rejected before any container was touched
(invalid manifest, credential or pull failure). Services are swapped one at a
time; the replaced container is kept stopped as ``<name>-previous`` until the
whole release is healthy, so a rollback only has to rename and restart it.

Each attempt appends one immutable record to the host's rollout log; a
rollback appends a second record pointing at the first via ``rollback_of``.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import (
    CommandError,
    CommandTimeout,
    HealthCheckFailed,
    HealthCheckTimeout,
    HostUnreachable,
    ManifestError,
    PullFailed,
    VpsctlError,
)
from ..exit_codes import ExitCode
from ..providers.docker import ContainerInfo, DockerRuntime, Readiness
from ..retry import call_with_retry
from .manifest import DeploymentManifest, ServiceRelease, parse_manifest

if TYPE_CHECKING:
    from ..logging import StructuredLogger
    from ..secrets import SecretResolver
    from ..state import RolloutLog

_LOG = logging.getLogger(__name__)

PULL_SECRET_SCOPE = "rollout.pull"
PREVIOUS_SUFFIX = "-previous"


class RolloutState(str, Enum):
    """States of the rollout state machine."""

    PENDING = "pending"
    PULLING = "pulling"
    SWAPPING = "swapping"
    HEALTH_CHECKING = "health-checking"
    STABLE = "stable"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    """Status reported back to the CI pipeline."""

    SUCCESS = "success"
    FAILURE = "failure"
    SUPERSEDED = "superseded"


class HostCondition(str, Enum):
    """What the host runs after a rollout attempt."""

    NEW_RELEASE = "new-release"
    PRE_ROLLOUT_PRESERVED = "pre-rollout-preserved"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_INCOMPLETE = "rollback-incomplete"


@dataclass(frozen=True)
class RolloutOutcome:
    """Result of one rollout trigger, consumable by CI."""

    rollout_id: str
    host: str
    manifest_version: str
    status: OutcomeStatus
    final_state: RolloutState
    host_state: HostCondition
    reason: str | None = None
    exit_code: int = ExitCode.OK

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "id": self.rollout_id,
            "host": self.host,
            "manifest_version": self.manifest_version,
            "status": self.status.value,
            "final_state": self.final_state.value,
            "host_state": self.host_state.value,
            "reason": self.reason,
            "exit_code": int(self.exit_code),
        }


@dataclass(slots=True)
class _Swap:
    release: ServiceRelease
    name: str
    had_previous: bool


@dataclass(slots=True)
class _Attempt:
    """Mutable bookkeeping for one rollout attempt."""

    rollout_id: str
    version: str
    started_at: datetime
    state: RolloutState = RolloutState.PENDING
    transitions: list[dict[str, str]] = field(default_factory=list)
    health_checks: list[dict[str, object]] = field(default_factory=list)
    images: dict[str, dict[str, str | None]] = field(default_factory=dict)
    swapped: list[_Swap] = field(default_factory=list)


def _retry_pull(exc: BaseException) -> bool:
    return isinstance(exc, (CommandError, CommandTimeout, HostUnreachable))


class RolloutController:
    """Run rollouts against the containers of a single host."""

    def __init__(
        self,
        runtime: DockerRuntime,
        log: RolloutLog,
        *,
        name_prefix: str = "vpsctl",
        registry: str | None = None,
        registry_user: str | None = None,
        registry_secret: str | None = None,
        resolver: SecretResolver | None = None,
        logger: StructuredLogger | None = None,
        pull_attempts: int = 3,
        pull_backoff: float = 2.0,
        health_timeout: float = 60.0,
        health_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Bind the controller to a host's container runtime and rollout log."""
        self.runtime = runtime
        self.log = log
        self.name_prefix = name_prefix
        self.registry = registry
        self.registry_user = registry_user
        self.registry_secret = registry_secret
        self.resolver = resolver
        self.logger = logger
        self.pull_attempts = max(1, pull_attempts)
        self.pull_backoff = pull_backoff
        self.health_timeout = health_timeout
        self.health_interval = health_interval
        self._clock = clock
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(UTC))

    @property
    def host(self) -> str:
        """Return the host whose containers this controller manages."""
        return self.runtime.transport.host

    def container_name(self, service: str) -> str:
        """Return the container name used for ``service``."""
        return f"{self.name_prefix}-{service}"

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def deploy(self, manifest: DeploymentManifest | Mapping[str, object]) -> RolloutOutcome:
        """Roll ``manifest`` out and return the outcome.

        Raw mappings are validated first; an invalid manifest ends the
        rollout in ``failed`` without touching the host.
        """
        attempt = _Attempt(rollout_id=_new_id(), version="", started_at=self._now())
        self._transition(attempt, RolloutState.PENDING)
        if not isinstance(manifest, DeploymentManifest):
            attempt.version = str(manifest.get("version", manifest.get("manifestVersion", "")))
            try:
                manifest = parse_manifest(manifest)
            except ManifestError as exc:
                return self._fail_before_swap(attempt, exc)
        attempt.version = manifest.version

        try:
            current = {
                release.name: self.runtime.inspect(self.container_name(release.name))
                for release in manifest.services
            }
        except VpsctlError as exc:
            return self._fail_before_swap(attempt, exc)
        pending = [
            release for release in manifest.services if not _runs(current[release.name], release)
        ]
        for release in manifest.services:
            info = current[release.name]
            attempt.images[release.name] = {
                "from": info.image if info is not None else None,
                "to": release.image,
            }
        if not pending:
            self._transition(attempt, RolloutState.STABLE)
            return self._finish(
                attempt,
                OutcomeStatus.SUCCESS,
                HostCondition.NEW_RELEASE,
                reason="all services already run the requested images",
            )

        self._transition(attempt, RolloutState.PULLING)
        try:
            self._pull(pending)
        except VpsctlError as exc:
            return self._fail_before_swap(attempt, exc)

        try:
            for release in pending:
                self._swap(attempt, release, current[release.name])
                self._await_ready(attempt, release)
        except VpsctlError as exc:
            return self._roll_back(attempt, exc)

        for swap in attempt.swapped:
            if swap.had_previous:
                self.runtime.remove(swap.name + PREVIOUS_SUFFIX)
        self._transition(attempt, RolloutState.STABLE)
        return self._finish(attempt, OutcomeStatus.SUCCESS, HostCondition.NEW_RELEASE)

    def supersede(self, manifest: DeploymentManifest, *, reason: str) -> RolloutOutcome:
        """Record that ``manifest`` was dropped from the queue before it ran."""
        attempt = _Attempt(rollout_id=_new_id(), version=manifest.version, started_at=self._now())
        self._transition(attempt, RolloutState.PENDING)
        return self._finish(
            attempt,
            OutcomeStatus.SUPERSEDED,
            HostCondition.PRE_ROLLOUT_PRESERVED,
            reason=reason,
            exit_code=ExitCode.CONFLICT,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def _pull(self, releases: list[ServiceRelease]) -> None:
        if self.registry and self.registry_secret:
            if self.resolver is None:
                raise PullFailed(
                    f"Registry {self.registry} needs secret '{self.registry_secret}' "
                    "but no resolver is configured.",
                    host=self.host,
                    resource=self.registry_secret,
                )
            with self.resolver.lease(self.registry_secret, PULL_SECRET_SCOPE) as secret:
                try:
                    self.runtime.login(self.registry, self.registry_user or "", secret.reveal())
                except CommandError as exc:
                    raise PullFailed(
                        f"Registry login to {self.registry} failed: {exc}",
                        host=self.host,
                        resource=self.registry,
                    ) from exc
            try:
                self._pull_images(releases)
            finally:
                self.runtime.logout(self.registry)
        else:
            self._pull_images(releases)

    def _pull_images(self, releases: list[ServiceRelease]) -> None:
        for release in releases:
            try:
                call_with_retry(
                    lambda image=release.image: self.runtime.pull(image),
                    attempts=self.pull_attempts,
                    delay=self.pull_backoff,
                    retry_on=_retry_pull,
                    sleep=self._sleep,
                    label=f"pull {release.image}",
                )
            except (CommandError, CommandTimeout, HostUnreachable) as exc:
                raise PullFailed(
                    f"Pulling {release.image} failed after {self.pull_attempts} attempt(s): "
                    f"{exc}",
                    host=self.host,
                    resource=release.name,
                ) from exc

    def _swap(
        self, attempt: _Attempt, release: ServiceRelease, current: ContainerInfo | None
    ) -> None:
        self._transition(attempt, RolloutState.SWAPPING, service=release.name)
        name = self.container_name(release.name)
        previous = name + PREVIOUS_SUFFIX
        if current is not None and self.runtime.inspect(previous) is not None:
            self.runtime.remove(previous)
        if current is not None:
            self.runtime.stop(name)
            self.runtime.rename(name, previous)
        attempt.swapped.append(_Swap(release=release, name=name, had_previous=current is not None))
        self.runtime.run(name, release.image, binding=release.binding, env=release.env)

    def _await_ready(self, attempt: _Attempt, release: ServiceRelease) -> None:
        self._transition(attempt, RolloutState.HEALTH_CHECKING, service=release.name)
        name = self.container_name(release.name)
        deadline = self._clock() + self.health_timeout
        polls = 0
        while True:
            polls += 1
            try:
                verdict = self.runtime.readiness(name, release.health_url)
            except (CommandTimeout, HostUnreachable) as exc:
                _LOG.warning("Readiness poll of %s on %s failed: %s", name, self.host, exc)
                verdict = Readiness.STARTING
            if verdict is Readiness.READY:
                attempt.health_checks.append(
                    {"service": release.name, "result": "ready", "polls": polls}
                )
                return
            if verdict is Readiness.FAILED:
                attempt.health_checks.append(
                    {"service": release.name, "result": "failed", "polls": polls}
                )
                raise HealthCheckFailed(
                    f"Container {name} failed its readiness check.",
                    host=self.host,
                    resource=release.name,
                )
            if self._clock() >= deadline:
                attempt.health_checks.append(
                    {"service": release.name, "result": "timeout", "polls": polls}
                )
                raise HealthCheckTimeout(
                    f"Container {name} was not ready within {self.health_timeout:g}s.",
                    host=self.host,
                    resource=release.name,
                )
            self._sleep(self.health_interval)

    def _roll_back(self, attempt: _Attempt, error: VpsctlError) -> RolloutOutcome:
        failed_in = attempt.state
        self._transition(attempt, RolloutState.ROLLING_BACK)
        attempt_record = self._record(
            attempt, outcome="failure", reason=self._reason(error), failed_in=failed_in
        )
        rollback = _Attempt(
            rollout_id=_new_id(),
            version=attempt.version,
            started_at=self._now(),
            state=RolloutState.ROLLING_BACK,
        )
        self._transition(rollback, RolloutState.ROLLING_BACK)
        problems: list[str] = []
        for swap in reversed(attempt.swapped):
            previous = swap.name + PREVIOUS_SUFFIX
            try:
                if self.runtime.inspect(swap.name) is not None:
                    self.runtime.remove(swap.name)
                if swap.had_previous:
                    self.runtime.rename(previous, swap.name)
                    self.runtime.start(swap.name)
            except VpsctlError as exc:
                _LOG.error("Rollback of %s failed: %s", swap.name, exc)
                problems.append(f"{swap.release.name}: {exc}")
            rollback.images[swap.release.name] = attempt.images.get(swap.release.name, {})

        reason = self._reason(error)
        if problems:
            self._transition(rollback, RolloutState.FAILED)
            reason = f"{reason}; rollback incomplete: {'; '.join(problems)}"
            host_state = HostCondition.ROLLBACK_INCOMPLETE
            exit_code = ExitCode.PROVIDER
        else:
            self._transition(rollback, RolloutState.ROLLED_BACK)
            host_state = HostCondition.ROLLED_BACK
            exit_code = ExitCode.ROLLED_BACK
        return self._finish(
            rollback,
            OutcomeStatus.FAILURE,
            host_state,
            reason=reason,
            exit_code=exit_code,
            rollback_of=str(attempt_record["id"]),
            outcome_label="rolled-back" if not problems else "rollback-incomplete",
        )

    def _fail_before_swap(self, attempt: _Attempt, error: VpsctlError) -> RolloutOutcome:
        self._transition(attempt, RolloutState.FAILED)
        return self._finish(
            attempt,
            OutcomeStatus.FAILURE,
            HostCondition.PRE_ROLLOUT_PRESERVED,
            reason=self._reason(error),
            exit_code=error.exit_code,
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def _transition(
        self, attempt: _Attempt, state: RolloutState, *, service: str | None = None
    ) -> None:
        attempt.state = state
        entry = {"state": state.value, "at": self._now().isoformat()}
        if service is not None:
            entry["service"] = service
        attempt.transitions.append(entry)
        _LOG.info("Rollout %s on %s: %s", attempt.rollout_id, self.host, state.value)

    def _reason(self, error: Exception) -> str:
        text = f"{type(error).__name__}: {error}"
        return self.logger.redact(text) if self.logger is not None else text

    def _record(
        self,
        attempt: _Attempt,
        *,
        outcome: str,
        reason: str | None = None,
        rollback_of: str | None = None,
        failed_in: RolloutState | None = None,
    ) -> dict[str, object]:
        record: dict[str, object] = {
            "id": attempt.rollout_id,
            "host": self.host,
            "manifest_version": attempt.version,
            "started_at": attempt.started_at.isoformat(),
            "finished_at": self._now().isoformat(),
            "outcome": outcome,
            "state": attempt.state.value,
            "reason": reason,
            "health_checks": list(attempt.health_checks),
            "transitions": list(attempt.transitions),
            "images": dict(attempt.images),
            "rollback_of": rollback_of,
        }
        if failed_in is not None:
            record["failed_in"] = failed_in.value
        self.log.append(record)
        return record

    def _finish(
        self,
        attempt: _Attempt,
        status: OutcomeStatus,
        host_state: HostCondition,
        *,
        reason: str | None = None,
        exit_code: int = ExitCode.OK,
        rollback_of: str | None = None,
        outcome_label: str | None = None,
    ) -> RolloutOutcome:
        self._record(
            attempt,
            outcome=outcome_label or status.value,
            reason=reason,
            rollback_of=rollback_of,
        )
        return RolloutOutcome(
            rollout_id=attempt.rollout_id,
            host=self.host,
            manifest_version=attempt.version,
            status=status,
            final_state=attempt.state,
            host_state=host_state,
            reason=reason,
            exit_code=exit_code,
        )


def _runs(info: ContainerInfo | None, release: ServiceRelease) -> bool:
    return info is not None and info.running and info.image == release.image


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


__all__ = [
    "HostCondition",
    "OutcomeStatus",
    "PULL_SECRET_SCOPE",
    "PREVIOUS_SUFFIX",
    "RolloutController",
    "RolloutOutcome",
    "RolloutState",
]
