"""Firewall (ufw) and intrusion prevention (fail2ban) providers."""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..desired import BanRule
from ..templates import TemplateEngine
from ..transport import Transport
from .files import FilesProvider, content_digest

_DEFAULT_PATTERN = re.compile(r"^Default:\s*(\w+)\s*\(incoming\)")
_RULE_PATTERN = re.compile(
    r"^(\d+(?::\d+)?)/(tcp|udp)\s+(ALLOW|DENY|REJECT|LIMIT)", re.IGNORECASE
)
JAIL_DIRECTORY = "/etc/fail2ban/jail.d"
JAIL_PREFIX = "vpsctl-"
JAIL_SUFFIX = ".local"


def render_jail(templates: TemplateEngine, ban: BanRule) -> str:
    """Render the fail2ban jail drop-in for ``ban``."""
    return templates.render_to_string("fail2ban/jail.local.j2", {"ban": ban})


@dataclass(frozen=True, slots=True)
class FirewallStatus:
    """Parsed ``ufw status verbose`` output."""

    active: bool
    default_incoming: str | None
    allowed: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "active": self.active,
            "default_incoming": self.default_incoming,
            "allowed": list(self.allowed),
        }


def parse_ufw_status(output: str) -> FirewallStatus:
    """Parse the text printed by ``ufw status verbose``."""
    active = False
    default: str | None = None
    allowed: set[str] = set()
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if line.lower().startswith("status:"):
            active = line.split(":", 1)[1].strip().lower() == "active"
            continue
        match = _DEFAULT_PATTERN.match(line)
        if match:
            default = match.group(1).lower()
            continue
        if "(v6)" in line:
            continue
        match = _RULE_PATTERN.match(line)
        if match and match.group(3).upper() == "ALLOW":
            allowed.add(f"{match.group(1)}/{match.group(2).lower()}")
    return FirewallStatus(active=active, default_incoming=default, allowed=tuple(sorted(allowed)))


@dataclass(slots=True)
class UfwFirewall:
    """Manage inbound rules with ``ufw``."""

    transport: Transport
    ufw_bin: str = "ufw"

    def status(self) -> FirewallStatus:
        """Return the current firewall status."""
        result = self.transport.run([self.ufw_bin, "status", "verbose"])
        return parse_ufw_status(result.stdout)

    def allow(self, rule: str) -> None:
        """Allow inbound traffic matching ``rule`` (``port/proto``)."""
        self.transport.run([self.ufw_bin, "allow", rule])

    def set_default(self, policy: str) -> None:
        """Set the default inbound policy and enable the firewall."""
        self.transport.run([self.ufw_bin, "default", policy, "incoming"])
        self.transport.run([self.ufw_bin, "--force", "enable"])


@dataclass(slots=True)
class Fail2banJails:
    """Write and inspect vpsctl-owned fail2ban jail drop-ins."""

    transport: Transport
    files: FilesProvider
    directory: str = JAIL_DIRECTORY
    _listing_script: str = field(init=False, default="")

    def __post_init__(self) -> None:
        """Prepare the shell loop that lists managed jails."""
        pattern = f"{self.directory}/{JAIL_PREFIX}*{JAIL_SUFFIX}"
        self._listing_script = (
            f'for f in {pattern}; do [ -f "$f" ] && sha256sum "$f"; done; true'
        )

    def jail_path(self, service: str) -> str:
        """Return the drop-in path for ``service``."""
        return f"{self.directory}/{JAIL_PREFIX}{service}{JAIL_SUFFIX}"

    def digests(self) -> dict[str, str]:
        """Return ``{service: sha256}`` for the managed jails present."""
        result = self.transport.run(["sh", "-c", self._listing_script])
        digests: dict[str, str] = {}
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            name = parts[1].rsplit("/", 1)[-1]
            service = name[len(JAIL_PREFIX) : -len(JAIL_SUFFIX)]
            digests[service] = parts[0]
        return digests

    def write(self, service: str, text: str) -> str:
        """Write the jail for ``service``; return its digest."""
        self.files.write(self.jail_path(service), text, mode=0o644)
        return content_digest(text)


__all__ = [
    "Fail2banJails",
    "FirewallStatus",
    "UfwFirewall",
    "parse_ufw_status",
    "render_jail",
]
