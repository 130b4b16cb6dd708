"""Data models for host probing."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..desired import DesiredHostState
    from ..providers import HostProviders


class CheckKind(str, Enum):
    """Category of facts gathered from a host."""

    PACKAGES = "packages"
    USERS = "users"
    FIREWALL = "firewall"
    FILES = "files"
    SERVICES = "services"
    CERTIFICATES = "certificates"
    PROXY = "proxy"
    CONTAINERS = "containers"

    @classmethod
    def parse(cls, values: Iterable[str]) -> tuple[CheckKind, ...]:
        """Translate user-supplied names into check kinds."""
        kinds: list[CheckKind] = []
        for value in values:
            name = value.strip().lower()
            if not name:
                continue
            try:
                kind = cls(name)
            except ValueError as exc:
                allowed = ", ".join(item.value for item in cls)
                raise ValueError(f"Unknown check kind '{name}'. Allowed: {allowed}.") from exc
            if kind not in kinds:
                kinds.append(kind)
        return tuple(kinds)


ALL_CHECKS: tuple[CheckKind, ...] = tuple(CheckKind)


class FactStatus(str, Enum):
    """Whether a fact was gathered completely."""

    OK = "ok"
    PARTIAL = "partial"


@dataclass(slots=True, frozen=True)
class FactResult:
    """Outcome of one check kind."""

    kind: CheckKind
    status: FactStatus
    value: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 1
    duration_ms: int | None = None

    @property
    def is_partial(self) -> bool:
        """Return ``True`` when the check could not complete."""
        return self.status is FactStatus.PARTIAL

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        payload: dict[str, object] = {
            "status": self.status.value,
            "attempts": self.attempts,
            "value": dict(self.value),
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


@dataclass(slots=True, frozen=True)
class ProbedHostState:
    """Snapshot of facts read from a host at ``captured_at``."""

    host: str
    captured_at: datetime
    facts: Mapping[CheckKind, FactResult]

    def fact(self, kind: CheckKind) -> FactResult | None:
        """Return the fact gathered for ``kind``, if it was requested."""
        return self.facts.get(kind)

    def value(self, kind: CheckKind) -> Mapping[str, Any]:
        """Return the gathered value for ``kind`` (empty when missing)."""
        fact = self.facts.get(kind)
        return fact.value if fact is not None else {}

    @property
    def partial_kinds(self) -> tuple[CheckKind, ...]:
        """Return the check kinds that did not complete."""
        return tuple(kind for kind, fact in self.facts.items() if fact.is_partial)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "host": self.host,
            "captured_at": self.captured_at.isoformat(),
            "facts": {kind.value: fact.to_dict() for kind, fact in self.facts.items()},
        }


@dataclass(slots=True, frozen=True)
class ProbeScope:
    """Narrow the resources a probe looks at.

    ``None`` means "everything the check can enumerate"; a tuple restricts the
    check to the named resources.
    """

    packages: tuple[str, ...] | None = None
    users: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    services: tuple[str, ...] = ()
    certificates: tuple[str, ...] = ()
    proxy_sites: tuple[str, ...] = ()
    container_prefix: str = "vpsctl"

    @classmethod
    def from_desired(
        cls,
        desired: DesiredHostState,
        *,
        container_prefix: str = "vpsctl",
    ) -> ProbeScope:
        """Scope every check to the resources ``desired`` names."""
        from ..desired import SSHD_DROPIN_PATH

        files = [item.path for item in desired.files]
        if desired.ssh is not None:
            files.append(SSHD_DROPIN_PATH)
        return cls(
            packages=desired.packages,
            users=tuple(user.name for user in desired.users),
            files=tuple(files),
            services=tuple(service.name for service in desired.services),
            certificates=tuple(cert.domain for cert in desired.certificates),
            proxy_sites=tuple(site.name for site in desired.proxy_sites),
            container_prefix=container_prefix,
        )


CheckRunner = Callable[["HostProviders", ProbeScope], Mapping[str, Any]]


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Metadata + callable for a check kind."""

    kind: CheckKind
    run: CheckRunner


__all__ = [
    "ALL_CHECKS",
    "CheckDefinition",
    "CheckKind",
    "CheckRunner",
    "FactResult",
    "FactStatus",
    "ProbeScope",
    "ProbedHostState",
]
