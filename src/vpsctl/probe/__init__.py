"""Host state prober."""
from __future__ import annotations

from .checks import DEFAULT_CHECKS
from .engine import HostProber
from .models import (
    ALL_CHECKS,
    CheckDefinition,
    CheckKind,
    FactResult,
    FactStatus,
    ProbedHostState,
    ProbeScope,
)

__all__ = [
    "ALL_CHECKS",
    "CheckDefinition",
    "CheckKind",
    "DEFAULT_CHECKS",
    "FactResult",
    "FactStatus",
    "HostProber",
    "ProbeScope",
    "ProbedHostState",
]
