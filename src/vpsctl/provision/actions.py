"""Convergence actions and the report produced by applying them."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from ..exit_codes import ExitCode


class ActionKind(str, Enum):
    """Kinds of change the engine can make to a host."""

    CREATE_USER = "create-user"
    UPDATE_USER_GROUPS = "update-user-groups"
    AUTHORIZED_KEYS = "authorized-keys"
    INSTALL_PACKAGE = "install-package"
    FIREWALL_ALLOW = "firewall-allow"
    FIREWALL_DEFAULT = "firewall-default"
    BAN_ON_FAILURE = "ban-on-failure"
    WRITE_FILE = "write-file"
    ENABLE_SERVICE = "enable-service"
    ISSUE_CERTIFICATE = "issue-certificate"
    RENEW_CERTIFICATE = "renew-certificate"
    CONFIGURE_PROXY = "configure-proxy"
    RELOAD_SERVICE = "reload-service"


class Phase(IntEnum):
    """Execution phases; actions always run in ascending phase order."""

    USERS = 1
    PACKAGES = 2
    FIREWALL = 3
    SERVICE_CONFIG = 4
    RELOAD = 5

    @property
    def label(self) -> str:
        """Return the human readable phase name."""
        return self.name.lower().replace("_", "-")


@dataclass(frozen=True)
class ConvergenceAction:
    """One idempotent step towards the desired state."""

    id: str
    kind: ActionKind
    phase: Phase
    resource: str
    description: str
    params: Mapping[str, Any] = field(default_factory=dict)
    secrets: tuple[str, ...] = ()
    triggered_by: tuple[str, ...] = ()
    notify: tuple[str, ...] = ()
    rollback: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation without file contents."""
        params = {key: value for key, value in self.params.items() if key != "content"}
        return {
            "id": self.id,
            "kind": self.kind.value,
            "phase": self.phase.label,
            "resource": self.resource,
            "description": self.description,
            "params": params,
            "secrets": list(self.secrets),
            "triggered_by": list(self.triggered_by),
            "rollback": self.rollback,
        }


class ActionStatus(str, Enum):
    """Outcome of a single action in a report."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not-run"


@dataclass(frozen=True)
class ActionOutcome:
    """Recorded result of one action."""

    action: ConvergenceAction
    status: ActionStatus
    detail: str = ""
    duration_ms: int = 0
    error: Mapping[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        payload: dict[str, object] = {
            "id": self.action.id,
            "kind": self.action.kind.value,
            "phase": self.action.phase.label,
            "resource": self.action.resource,
            "status": self.status.value,
            "detail": self.detail,
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = dict(self.error)
        return payload


@dataclass(frozen=True)
class ConvergenceReport:
    """Operator-facing summary of a convergence run."""

    host: str
    desired_checksum: str
    started_at: datetime
    finished_at: datetime
    outcomes: Sequence[ActionOutcome]
    exit_code: int = ExitCode.OK
    dry_run: bool = False

    def count(self, status: ActionStatus) -> int:
        """Return how many actions finished with ``status``."""
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when no action failed."""
        return self.count(ActionStatus.FAILED) == 0

    @property
    def failed(self) -> ActionOutcome | None:
        """Return the failed outcome that halted the run, if any."""
        for outcome in self.outcomes:
            if outcome.status is ActionStatus.FAILED:
                return outcome
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "host": self.host,
            "desired_checksum": self.desired_checksum,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": int((self.finished_at - self.started_at).total_seconds() * 1000),
            "dry_run": self.dry_run,
            "exit_code": int(self.exit_code),
            "summary": {status.value: self.count(status) for status in ActionStatus},
            "actions": [outcome.to_dict() for outcome in self.outcomes],
        }


__all__ = [
    "ActionKind",
    "ActionOutcome",
    "ActionStatus",
    "ConvergenceAction",
    "ConvergenceReport",
    "Phase",
]
