"""Error taxonomy shared by the prober, engine, resolver and rollout controller.

Every error carries the context an operator needs to locate the failure
(which host, which action, which resource) and maps onto a CLI exit code.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class VpsctlError(RuntimeError):
    """Base class for orchestrator failures."""

    exit_code: ExitCode = ExitCode.PROVIDER
    #: Network-class errors may be retried while a retry budget remains.
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        host: str | None = None,
        action: str | None = None,
        resource: str | None = None,
    ) -> None:
        """Store the message together with its host/action/resource context."""
        super().__init__(message)
        self.message = message
        self.host = host
        self.action = action
        self.resource = resource

    def context(self) -> dict[str, object]:
        """Return a JSON-safe description of the failure."""
        payload: dict[str, object] = {
            "error": type(self).__name__,
            "message": self.message,
        }
        if self.host is not None:
            payload["host"] = self.host
        if self.action is not None:
            payload["action"] = self.action
        if self.resource is not None:
            payload["resource"] = self.resource
        return payload

    def __str__(self) -> str:
        """Render the message prefixed with any known context."""
        parts = [
            f"{label}={value}"
            for label, value in (
                ("host", self.host),
                ("action", self.action),
                ("resource", self.resource),
            )
            if value is not None
        ]
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class HostUnreachable(VpsctlError):
    """The target host did not respond."""

    exit_code = ExitCode.ENVIRONMENT
    retryable = True


class CommandTimeout(VpsctlError):
    """A remote command exceeded its per-operation timeout."""

    exit_code = ExitCode.ENVIRONMENT
    retryable = True


class CommandError(VpsctlError):
    """A remote command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        host: str | None = None,
    ) -> None:
        """Capture the process outcome alongside the message."""
        super().__init__(message, host=host)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class CheckFailed(VpsctlError):
    """A single probe check errored; recorded per fact rather than raised."""


class PreconditionFailed(VpsctlError):
    """Probed facts contradict an assumption an action depends on."""

    exit_code = ExitCode.VALIDATION


class ActionFailed(VpsctlError):
    """A convergence step errored."""


class DesiredStateError(VpsctlError):
    """The desired-state document is malformed."""

    exit_code = ExitCode.VALIDATION


class ManifestError(VpsctlError):
    """A deployment manifest is malformed or not content-addressed."""

    exit_code = ExitCode.VALIDATION


class PullFailed(VpsctlError):
    """An image could not be pulled after exhausting the retry budget."""


class HealthCheckTimeout(VpsctlError):
    """A new container did not become ready within the health window."""

    exit_code = ExitCode.ROLLED_BACK


class HealthCheckFailed(VpsctlError):
    """A new container reported itself unhealthy or exited."""

    exit_code = ExitCode.ROLLED_BACK


class ScopeViolation(VpsctlError):
    """An action requested a secret outside of its declared scope."""

    exit_code = ExitCode.VALIDATION


class SecretNotFound(VpsctlError):
    """The secret store has no entry for the requested name."""

    exit_code = ExitCode.VALIDATION


class ProxyConfigSyntaxError(VpsctlError):
    """Rendered reverse-proxy configuration failed validation."""

    exit_code = ExitCode.VALIDATION


class ConcurrencyConflict(VpsctlError):
    """A provisioning lock is held or a rollout is already in flight."""

    exit_code = ExitCode.CONFLICT


__all__ = [
    "ActionFailed",
    "CheckFailed",
    "CommandError",
    "CommandTimeout",
    "ConcurrencyConflict",
    "DesiredStateError",
    "HealthCheckFailed",
    "HealthCheckTimeout",
    "HostUnreachable",
    "ManifestError",
    "PreconditionFailed",
    "ProxyConfigSyntaxError",
    "PullFailed",
    "ScopeViolation",
    "SecretNotFound",
    "VpsctlError",
]
