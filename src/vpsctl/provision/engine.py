"""Provisioning runs: probe, plan and apply under the per-host locks."""
from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..desired import DesiredHostState
from ..locking import HostMarker, LockManager
from ..probe import HostProber, ProbedHostState, ProbeScope
from .actions import ActionOutcome, ActionStatus, ConvergenceAction, ConvergenceReport
from .executor import apply
from .planner import PARTIAL_POLICIES, converge, required_checks
from .render import ConfigRenderer

if TYPE_CHECKING:
    from ..logging import StructuredLogger
    from ..providers import HostProviders
    from ..secrets import SecretResolver
    from ..state import StateRegistry

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionPlan:
    """The probed facts and the actions planned from them."""

    probed: ProbedHostState
    actions: tuple[ConvergenceAction, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "host": self.probed.host,
            "captured_at": self.probed.captured_at.isoformat(),
            "partial": [kind.value for kind in self.probed.partial_kinds],
            "actions": [action.to_dict() for action in self.actions],
        }


def _default_owner() -> str:
    return f"{socket.gethostname()} pid {os.getpid()}"


class Provisioner:
    """Drive one host from its probed state to a desired state."""

    def __init__(
        self,
        providers: HostProviders,
        *,
        renderer: ConfigRenderer,
        prober: HostProber,
        locks: LockManager | None = None,
        marker_path: Path | None = None,
        registry: StateRegistry | None = None,
        resolver: SecretResolver | None = None,
        logger: StructuredLogger | None = None,
        on_partial: str = "fail",
        container_prefix: str = "vpsctl",
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Collect the collaborators a provisioning run needs."""
        if on_partial not in PARTIAL_POLICIES:
            raise ValueError(f"Unsupported partial-fact policy '{on_partial}'.")
        self.providers = providers
        self.renderer = renderer
        self.prober = prober
        self.locks = locks
        self.marker_path = marker_path
        self.registry = registry
        self.resolver = resolver
        self.logger = logger
        self.on_partial = on_partial
        self.container_prefix = container_prefix
        self._now = now or (lambda: datetime.now(UTC))

    @property
    def host(self) -> str:
        """Return the host being provisioned."""
        return self.providers.host

    def plan(self, desired: DesiredHostState) -> ProvisionPlan:
        """Probe the facts ``desired`` depends on and return the action plan."""
        scope = ProbeScope.from_desired(desired, container_prefix=self.container_prefix)
        probed = self.prober.probe(required_checks(desired), scope=scope)
        actions = converge(desired, probed, renderer=self.renderer, on_partial=self.on_partial)
        _LOG.info("Planned %d action(s) for %s", len(actions), self.host)
        return ProvisionPlan(probed=probed, actions=actions)

    def provision(self, desired: DesiredHostState, *, dry_run: bool = False) -> ConvergenceReport:
        """Converge the host and return the report.

        A dry run plans without taking locks or touching the host; every
        planned action is reported as ``not-run``. Real runs hold the local
        provision lock and the host-side marker, and persist the report.
        """
        if dry_run:
            return self._dry_run(desired)

        with ExitStack() as stack:
            if self.locks is not None:
                stack.enter_context(self.locks.provision_lock(self.host))
            if self.marker_path is not None:
                marker = HostMarker(
                    self.providers.transport, self.marker_path, owner=_default_owner()
                )
                stack.enter_context(marker.hold())
            planned = self.plan(desired)
            report = apply(
                planned.actions,
                self.providers,
                desired_checksum=desired.checksum,
                resolver=self.resolver,
                logger=self.logger,
                now=self._now,
            )
        if self.registry is not None:
            self.registry.write_provision_report(self.host, report.to_dict())
        return report

    def _dry_run(self, desired: DesiredHostState) -> ConvergenceReport:
        started_at = self._now()
        planned = self.plan(desired)
        outcomes = tuple(
            ActionOutcome(action, ActionStatus.NOT_RUN, "dry-run") for action in planned.actions
        )
        return ConvergenceReport(
            host=self.host,
            desired_checksum=desired.checksum,
            started_at=started_at,
            finished_at=self._now(),
            outcomes=outcomes,
            dry_run=True,
        )


__all__ = ["ProvisionPlan", "Provisioner"]
