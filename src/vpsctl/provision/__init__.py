"""Host convergence: diff planning, action execution and provisioning runs."""

from .actions import (
    ActionKind,
    ActionOutcome,
    ActionStatus,
    ConvergenceAction,
    ConvergenceReport,
    Phase,
)
from .engine import ProvisionPlan, Provisioner
from .executor import USER_SECRET_SCOPE, apply
from .planner import PARTIAL_POLICIES, converge, required_checks
from .render import ConfigRenderer

__all__ = [
    "ActionKind",
    "ActionOutcome",
    "ActionStatus",
    "ConfigRenderer",
    "ConvergenceAction",
    "ConvergenceReport",
    "PARTIAL_POLICIES",
    "Phase",
    "ProvisionPlan",
    "Provisioner",
    "USER_SECRET_SCOPE",
    "apply",
    "converge",
    "required_checks",
]
