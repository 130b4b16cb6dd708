"""Helpers for interacting with the vpsctl state registry.

The registry directory (``/var/lib/vpsctl/registry`` by default) stores YAML
artifacts such as ``provision/<host>.yml``, the last convergence report per
host. Files are written atomically so an interrupted run never leaves a
half-written report behind.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

import yaml

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._@-]+")


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


def host_key(host: str) -> str:
    """Return a filesystem-safe key for ``host``."""
    cleaned = _UNSAFE_NAME.sub("_", host).strip("._")
    if not cleaned:
        raise StateRegistryError(f"Cannot derive a registry key from host {host!r}.")
    return cleaned


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_provision_report(self, host: str) -> Mapping[str, object] | None:
        """Return the last convergence report recorded for ``host``."""
        value = self.read(f"provision/{host_key(host)}.yml")
        return value if isinstance(value, Mapping) else None

    def write_provision_report(self, host: str, report: Mapping[str, object]) -> None:
        """Persist the convergence report for ``host``."""
        self.write(f"provision/{host_key(host)}.yml", report)


__all__ = ["StateRegistry", "StateRegistryError", "host_key"]
