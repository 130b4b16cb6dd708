"""Systemd provider for managing units on the host."""
from __future__ import annotations

from dataclasses import dataclass

from ..errors import CommandError
from ..transport import CommandResult, Transport

# Units whose configuration must pass a syntax check before a reload.
_PRE_RELOAD_CHECKS: dict[str, list[str]] = {
    "ssh": ["sshd", "-t"],
    "sshd": ["sshd", "-t"],
    "nginx": ["nginx", "-t"],
    "fail2ban": ["fail2ban-client", "-t"],
}


class SystemdError(CommandError):
    """Raised when systemd operations fail."""


@dataclass(frozen=True, slots=True)
class UnitState:
    """Enablement and activity of a unit."""

    name: str
    enabled: bool
    active: bool

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {"enabled": self.enabled, "active": self.active}


@dataclass(slots=True)
class SystemdProvider:
    """Query and drive systemd units through ``systemctl``."""

    transport: Transport
    systemctl_bin: str = "systemctl"

    def state(self, name: str) -> UnitState:
        """Return whether ``name`` is enabled and active."""
        enabled = self._systemctl("is-enabled", name, check=False)
        active = self._systemctl("is-active", name, check=False)
        return UnitState(
            name=name,
            enabled=enabled.stdout.strip() in {"enabled", "static", "alias"},
            active=active.stdout.strip() == "active",
        )

    def enable_now(self, name: str) -> CommandResult:
        """Enable and start ``name``."""
        return self._systemctl("enable", "--now", name)

    def reload(self, name: str) -> CommandResult:
        """Validate the unit's configuration, then reload or restart it."""
        check = _PRE_RELOAD_CHECKS.get(name)
        if check is not None:
            self.transport.run(check)
        return self._systemctl("reload-or-restart", name)

    # ------------------------------------------------------------------
    def _systemctl(self, *args: str, check: bool = True) -> CommandResult:
        result = self.transport.run([self.systemctl_bin, *args], check=False)
        if check and not result.ok:
            message = result.stderr.strip() or result.stdout.strip() or "no output"
            raise SystemdError(
                f"{self.systemctl_bin} {' '.join(args)} failed (exit {result.returncode}): "
                f"{message}",
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                host=self.transport.host,
            )
        return result


__all__ = ["SystemdError", "SystemdProvider", "UnitState"]
