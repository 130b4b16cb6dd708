"""Debian/Ubuntu package management through apt."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from ..transport import Transport

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


@dataclass(slots=True)
class PackagesProvider:
    """Query and install packages with ``dpkg-query`` and ``apt-get``."""

    transport: Transport
    install_timeout: float = 900.0
    _index_refreshed: bool = field(default=False, init=False)

    def installed(self, names: Iterable[str] | None = None) -> set[str]:
        """Return the installed packages, optionally narrowed to ``names``."""
        args = ["dpkg-query", "-W", "-f", "${Package} ${db:Status-Status}\n"]
        wanted = sorted(set(names)) if names is not None else []
        args.extend(wanted)
        # dpkg-query exits 1 when any named package is unknown; stdout still lists the rest.
        result = self.transport.run(args, check=False)
        installed: set[str] = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == "installed":
                installed.add(parts[0].split(":", 1)[0])
        return installed

    def is_installed(self, name: str) -> bool:
        """Return ``True`` when ``name`` is installed."""
        return name in self.installed([name])

    def install(self, names: Iterable[str]) -> None:
        """Install ``names`` non-interactively."""
        packages = sorted(set(names))
        if not packages:
            return
        if not self._index_refreshed:
            self.transport.run(
                ["apt-get", "update", "-q"], env=_APT_ENV, timeout=self.install_timeout
            )
            self._index_refreshed = True
        self.transport.run(
            ["apt-get", "install", "-y", "-q", "--no-install-recommends", *packages],
            env=_APT_ENV,
            timeout=self.install_timeout,
        )


__all__ = ["PackagesProvider"]
