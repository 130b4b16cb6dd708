"""Container rollouts driven by CI triggers."""

from .controller import (
    PULL_SECRET_SCOPE,
    HostCondition,
    OutcomeStatus,
    RolloutController,
    RolloutOutcome,
    RolloutState,
)
from .manifest import DeploymentManifest, ServiceRelease, load_manifest, parse_manifest
from .queue import RolloutQueue

__all__ = [
    "DeploymentManifest",
    "HostCondition",
    "OutcomeStatus",
    "PULL_SECRET_SCOPE",
    "RolloutController",
    "RolloutOutcome",
    "RolloutQueue",
    "RolloutState",
    "ServiceRelease",
    "load_manifest",
    "parse_manifest",
]
