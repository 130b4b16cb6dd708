"""Tests for per-host rollout serialisation."""
from __future__ import annotations

import threading

import pytest
from fakes import DIGEST_A, image

from vpsctl.rollout import (
    DeploymentManifest,
    HostCondition,
    OutcomeStatus,
    RolloutOutcome,
    RolloutQueue,
    RolloutState,
    ServiceRelease,
)


def _manifest(version: str) -> DeploymentManifest:
    return DeploymentManifest(version, (ServiceRelease("web", image("web", DIGEST_A)),))


def _outcome(version: str, status: OutcomeStatus, reason: str | None = None) -> RolloutOutcome:
    return RolloutOutcome(
        rollout_id=f"r{version}",
        host="vps1",
        manifest_version=version,
        status=status,
        final_state=RolloutState.STABLE,
        host_state=HostCondition.NEW_RELEASE,
        reason=reason,
    )


class GatedController:
    """Controller stand-in whose deploys block until released."""

    host = "vps1"

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.deployed: list[str] = []
        self.superseded: list[tuple[str, str]] = []
        self._lock = threading.Lock()
        self.running = 0
        self.max_running = 0

    def deploy(self, manifest: DeploymentManifest) -> RolloutOutcome:
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.started.set()
        self.release.wait(timeout=5)
        with self._lock:
            self.running -= 1
            self.deployed.append(manifest.version)
        if manifest.version == "boom":
            raise RuntimeError("docker daemon went away")
        return _outcome(manifest.version, OutcomeStatus.SUCCESS)

    def supersede(self, manifest: DeploymentManifest, *, reason: str) -> RolloutOutcome:
        self.superseded.append((manifest.version, reason))
        return _outcome(manifest.version, OutcomeStatus.SUPERSEDED, reason)


def test_rollouts_run_one_at_a_time_and_oldest_pending_is_superseded() -> None:
    """A full queue drops its oldest trigger in favour of the newest."""
    controller = GatedController()
    queue = RolloutQueue(controller, depth=1)  # type: ignore[arg-type]

    first = queue.submit(_manifest("1"))
    assert controller.started.wait(timeout=5)
    assert queue.active is not None and queue.active.version == "1"
    second = queue.submit(_manifest("2"))
    third = queue.submit(_manifest("3"))

    dropped = second.result(timeout=5)
    assert dropped.status is OutcomeStatus.SUPERSEDED
    assert controller.superseded == [("2", "superseded by manifest 3")]
    assert queue.pending == 1

    controller.release.set()
    assert first.result(timeout=5).status is OutcomeStatus.SUCCESS
    assert third.result(timeout=5).manifest_version == "3"
    queue.close()

    assert controller.deployed == ["1", "3"]
    assert controller.max_running == 1
    assert queue.active is None


def test_deploy_errors_surface_through_the_future() -> None:
    """Unexpected controller errors are raised by ``Future.result``."""
    controller = GatedController()
    controller.release.set()

    with RolloutQueue(controller) as queue:  # type: ignore[arg-type]
        future = queue.submit(_manifest("boom"))
        with pytest.raises(RuntimeError, match="daemon went away"):
            future.result(timeout=5)


def test_closed_queue_rejects_triggers() -> None:
    """Nothing can be submitted after ``close``."""
    queue = RolloutQueue(GatedController())  # type: ignore[arg-type]
    queue.close()

    with pytest.raises(RuntimeError, match="closed"):
        queue.submit(_manifest("1"))


def test_depth_must_be_positive() -> None:
    """A queue needs room for at least one pending trigger."""
    with pytest.raises(ValueError):
        RolloutQueue(GatedController(), depth=0)  # type: ignore[arg-type]
