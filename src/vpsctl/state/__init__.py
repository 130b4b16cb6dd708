"""State persistence helpers for vpsctl."""

from .registry import StateRegistry, StateRegistryError, host_key
from .rollouts import RolloutLog, RolloutLogError

__all__ = ["RolloutLog", "RolloutLogError", "StateRegistry", "StateRegistryError", "host_key"]
