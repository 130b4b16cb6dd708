"""Per-host rollout queue: one rollout at a time, bounded pending triggers."""
from __future__ import annotations

import collections
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass

from .controller import RolloutController, RolloutOutcome
from .manifest import DeploymentManifest

_LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class _Trigger:
    manifest: DeploymentManifest
    future: Future[RolloutOutcome]


class RolloutQueue:
    """Serialize rollouts for one host through a single dispatcher thread.

    Triggers submitted while a rollout is in flight wait in a queue of at most
    ``depth`` entries. When it is full the oldest pending trigger is dropped
    and its future resolves with a ``superseded`` outcome: only the latest
    manifest matters.
    """

    def __init__(self, controller: RolloutController, *, depth: int = 4) -> None:
        """Start the dispatcher for ``controller``'s host."""
        if depth < 1:
            raise ValueError("Queue depth must be at least 1.")
        self.controller = controller
        self.depth = depth
        self._pending: collections.deque[_Trigger] = collections.deque()
        self._condition = threading.Condition()
        self._closed = False
        self._active: DeploymentManifest | None = None
        self._thread = threading.Thread(
            target=self._dispatch, name=f"rollout-{controller.host}", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> RolloutQueue:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def pending(self) -> int:
        """Return how many triggers are waiting."""
        with self._condition:
            return len(self._pending)

    @property
    def active(self) -> DeploymentManifest | None:
        """Return the manifest currently being rolled out, if any."""
        with self._condition:
            return self._active

    def submit(self, manifest: DeploymentManifest) -> Future[RolloutOutcome]:
        """Queue ``manifest`` and return a future for its outcome."""
        future: Future[RolloutOutcome] = Future()
        dropped: _Trigger | None = None
        with self._condition:
            if self._closed:
                raise RuntimeError("Rollout queue is closed.")
            if len(self._pending) >= self.depth:
                dropped = self._pending.popleft()
            self._pending.append(_Trigger(manifest, future))
            self._condition.notify()
        if dropped is not None:
            _LOG.info(
                "Trigger %s superseded by %s", dropped.manifest.version, manifest.version
            )
            self._resolve(
                dropped,
                lambda: self.controller.supersede(
                    dropped.manifest, reason=f"superseded by manifest {manifest.version}"
                ),
            )
        return future

    def close(self, *, wait: bool = True) -> None:
        """Stop accepting triggers; queued ones still run before the thread exits."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        if wait:
            self._thread.join()

    def _dispatch(self) -> None:
        while True:
            with self._condition:
                while not self._pending and not self._closed:
                    self._condition.wait()
                if not self._pending:
                    return
                trigger = self._pending.popleft()
                self._active = trigger.manifest
            try:
                self._resolve(trigger, lambda: self.controller.deploy(trigger.manifest))
            finally:
                with self._condition:
                    self._active = None

    @staticmethod
    def _resolve(trigger: _Trigger, produce: Callable[[], RolloutOutcome]) -> None:
        if not trigger.future.set_running_or_notify_cancel():
            return
        try:
            trigger.future.set_result(produce())
        except Exception as exc:  # noqa: BLE001 - surfaced through the future
            trigger.future.set_exception(exc)


__all__ = ["RolloutQueue"]
