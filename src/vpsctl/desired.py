"""Declarative description of a host and its YAML loader.

A desired-state document names every resource vpsctl manages on a VPS::

    packages: [nginx, fail2ban, docker.io]
    users:
      - name: deploy
        groups: [docker]
        authorized_keys: ["ssh-ed25519 AAAA... ci@example"]
        password_secret: deploy-password
    ssh:
      port: 22
      permit_root_login: false
      password_authentication: false
    firewall:
      default: deny
      allow: ["22/tcp", "80/tcp", "443/tcp"]
    intrusion_prevention:
      - service: sshd
        threshold: 5
    files:
      - path: /etc/docker/daemon.json
        content: '{"log-driver": "journald"}'
        mode: "0644"
        notify: [docker]
    services: [docker, nginx, fail2ban]
    certificates:
      - domain: app.example.com
        email: ops@example.com
    proxy:
      sites:
        - name: app
          server_names: [app.example.com]
          tls: app.example.com
          rate_limit: {rate: 10r/s, burst: 20}
          routes:
            - {path: /, upstream: "http://127.0.0.1:8080"}

Loading validates the document and rejects duplicate keys per resource type.
"""
from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path

import yaml

from .errors import DesiredStateError

SSHD_DROPIN_PATH = "/etc/ssh/sshd_config.d/90-vpsctl.conf"

_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*\$?$")
_SITE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_RATE_PATTERN = re.compile(r"^\d+r/[sm]$")
_PROTOCOLS = {"tcp", "udp"}
_POLICIES = {"deny", "allow", "reject"}


@dataclass(frozen=True)
class UserSpec:
    """A service or login user."""

    name: str
    groups: tuple[str, ...] = ()
    shell: str = "/bin/bash"
    system: bool = False
    authorized_keys: tuple[str, ...] = ()
    password_secret: str | None = None


@dataclass(frozen=True)
class SSHHardening:
    """Settings rendered into the sshd drop-in."""

    port: int = 22
    permit_root_login: bool = False
    password_authentication: bool = False
    allow_users: tuple[str, ...] = ()


@dataclass(frozen=True)
class FirewallRule:
    """An inbound allow rule."""

    port: int
    proto: str = "tcp"

    @property
    def key(self) -> str:
        """Return the ``port/proto`` form used by ufw."""
        return f"{self.port}/{self.proto}"


@dataclass(frozen=True)
class FirewallPolicy:
    """Default inbound policy and the allow-list applied before it."""

    default: str = "deny"
    allow: tuple[FirewallRule, ...] = ()


@dataclass(frozen=True)
class BanRule:
    """Ban clients after repeated authentication failures on ``service``."""

    service: str
    threshold: int = 5
    find_time: int = 600
    ban_time: int = 3600
    port: str | None = None


@dataclass(frozen=True)
class ManagedFile:
    """A configuration file owned by vpsctl."""

    path: str
    content: str
    mode: int = 0o644
    owner: str = "root"
    group: str = "root"
    notify: tuple[str, ...] = ()

    @property
    def sha256(self) -> str:
        """Return the digest of the desired content."""
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ServiceSpec:
    """A systemd unit that must be enabled and running."""

    name: str


@dataclass(frozen=True)
class CertificateSpec:
    """A TLS certificate obtained from the CA client."""

    domain: str
    email: str
    webroot: str = "/var/www/html"
    extra_domains: tuple[str, ...] = ()
    renew_before_days: int = 30


@dataclass(frozen=True)
class ProxyRoute:
    """Map a URL path prefix to an upstream."""

    path: str
    upstream: str


@dataclass(frozen=True)
class RateLimit:
    """Request rate limit applied to every route of a site."""

    rate: str = "10r/s"
    burst: int = 20


@dataclass(frozen=True)
class ProxySite:
    """A reverse proxy virtual host."""

    name: str
    server_names: tuple[str, ...]
    routes: tuple[ProxyRoute, ...]
    tls: str | None = None
    rate_limit: RateLimit | None = None
    client_max_body_size: str = "10m"


@dataclass(frozen=True)
class DesiredHostState:
    """Complete declarative description of a host."""

    users: tuple[UserSpec, ...] = ()
    packages: tuple[str, ...] = ()
    ssh: SSHHardening | None = None
    firewall: FirewallPolicy | None = None
    bans: tuple[BanRule, ...] = ()
    files: tuple[ManagedFile, ...] = ()
    services: tuple[ServiceSpec, ...] = ()
    certificates: tuple[CertificateSpec, ...] = ()
    proxy_sites: tuple[ProxySite, ...] = ()
    checksum: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        """Reject duplicates and compute the canonical checksum."""
        _ensure_unique("user", [user.name for user in self.users])
        _ensure_unique("package", list(self.packages))
        _ensure_unique("ban", [ban.service for ban in self.bans])
        _ensure_unique("file", [item.path for item in self.files])
        _ensure_unique("service", [service.name for service in self.services])
        _ensure_unique("certificate", [cert.domain for cert in self.certificates])
        _ensure_unique("proxy site", [site.name for site in self.proxy_sites])
        if self.firewall is not None:
            _ensure_unique("firewall rule", [rule.key for rule in self.firewall.allow])
            if self.firewall.default != "allow":
                ssh_port = self.ssh.port if self.ssh else 22
                if FirewallRule(ssh_port, "tcp") not in self.firewall.allow:
                    raise DesiredStateError(
                        f"Firewall default '{self.firewall.default}' requires an allow rule "
                        f"for SSH port {ssh_port}/tcp.",
                        resource="firewall",
                    )
        if self.ssh is not None and any(item.path == SSHD_DROPIN_PATH for item in self.files):
            raise DesiredStateError(
                f"{SSHD_DROPIN_PATH} is generated from the ssh section; remove it from files.",
                resource=SSHD_DROPIN_PATH,
            )
        cert_domains = {cert.domain for cert in self.certificates}
        for site in self.proxy_sites:
            if site.tls is not None and site.tls not in cert_domains:
                raise DesiredStateError(
                    f"Proxy site '{site.name}' terminates TLS for '{site.tls}' "
                    "which is not listed under certificates.",
                    resource=f"proxy:{site.name}",
                )
        object.__setattr__(self, "checksum", _checksum(self))

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation without the checksum."""
        payload = asdict(self)
        payload.pop("checksum", None)
        return payload


def _checksum(state: DesiredHostState) -> str:
    canonical = json.dumps(state.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _ensure_unique(label: str, keys: Sequence[str]) -> None:
    seen: set[str] = set()
    for key in keys:
        if key in seen:
            raise DesiredStateError(f"Duplicate {label} '{key}' in desired state.", resource=key)
        seen.add(key)


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------
_TOP_LEVEL_KEYS = {
    "packages",
    "users",
    "ssh",
    "firewall",
    "intrusion_prevention",
    "files",
    "services",
    "certificates",
    "proxy",
}


def load_desired_state(path: Path, *, renew_before_days: int = 30) -> DesiredHostState:
    """Read and validate the desired-state YAML document at ``path``."""
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise DesiredStateError(f"Cannot read desired state {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise DesiredStateError(f"Invalid YAML in desired state {path}: {exc}") from exc
    return parse_desired_state(raw or {}, renew_before_days=renew_before_days)


def parse_desired_state(
    raw: object,
    *,
    renew_before_days: int = 30,
) -> DesiredHostState:
    """Build a :class:`DesiredHostState` from decoded YAML/JSON data."""
    data = _mapping(raw, "desired state")
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise DesiredStateError(f"Unknown desired state sections: {', '.join(sorted(unknown))}.")

    proxy = _mapping(data.get("proxy") or {}, "proxy")
    return DesiredHostState(
        users=tuple(_parse_user(item) for item in _sequence(data.get("users"), "users")),
        packages=tuple(
            _string(item, "packages[]") for item in _sequence(data.get("packages"), "packages")
        ),
        ssh=_parse_ssh(data["ssh"]) if data.get("ssh") is not None else None,
        firewall=_parse_firewall(data["firewall"]) if data.get("firewall") is not None else None,
        bans=tuple(
            _parse_ban(item)
            for item in _sequence(data.get("intrusion_prevention"), "intrusion_prevention")
        ),
        files=tuple(_parse_file(item) for item in _sequence(data.get("files"), "files")),
        services=tuple(
            _parse_service(item) for item in _sequence(data.get("services"), "services")
        ),
        certificates=tuple(
            _parse_certificate(item, renew_before_days)
            for item in _sequence(data.get("certificates"), "certificates")
        ),
        proxy_sites=tuple(
            _parse_site(item) for item in _sequence(proxy.get("sites"), "proxy.sites")
        ),
    )


def _parse_user(raw: object) -> UserSpec:
    data = _mapping(raw, "users[]")
    name = _string(data.get("name"), "users[].name")
    if not _NAME_PATTERN.match(name):
        raise DesiredStateError(f"Invalid user name '{name}'.", resource=f"user:{name}")
    secret = data.get("password_secret")
    return UserSpec(
        name=name,
        groups=tuple(
            _string(item, f"users.{name}.groups[]")
            for item in _sequence(data.get("groups"), f"users.{name}.groups")
        ),
        shell=_string(data.get("shell", "/bin/bash"), f"users.{name}.shell"),
        system=bool(data.get("system", False)),
        authorized_keys=tuple(
            _string(item, f"users.{name}.authorized_keys[]").strip()
            for item in _sequence(data.get("authorized_keys"), f"users.{name}.authorized_keys")
        ),
        password_secret=_string(secret, f"users.{name}.password_secret") if secret else None,
    )


def _parse_ssh(raw: object) -> SSHHardening:
    data = _mapping(raw, "ssh")
    return SSHHardening(
        port=_port(data.get("port", 22), "ssh.port"),
        permit_root_login=bool(data.get("permit_root_login", False)),
        password_authentication=bool(data.get("password_authentication", False)),
        allow_users=tuple(
            _string(item, "ssh.allow_users[]")
            for item in _sequence(data.get("allow_users"), "ssh.allow_users")
        ),
    )


def _parse_firewall(raw: object) -> FirewallPolicy:
    data = _mapping(raw, "firewall")
    default = _string(data.get("default", "deny"), "firewall.default")
    if default not in _POLICIES:
        raise DesiredStateError(
            f"Unsupported firewall default '{default}'.", resource="firewall"
        )
    return FirewallPolicy(
        default=default,
        allow=tuple(_parse_rule(item) for item in _sequence(data.get("allow"), "firewall.allow")),
    )


def _parse_rule(raw: object) -> FirewallRule:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return FirewallRule(port=_port(raw, "firewall.allow[]"))
    text = _string(raw, "firewall.allow[]")
    port_text, _, proto = text.partition("/")
    proto = proto or "tcp"
    if proto not in _PROTOCOLS:
        raise DesiredStateError(f"Unsupported protocol in firewall rule '{text}'.")
    return FirewallRule(port=_port(port_text, f"firewall rule '{text}'"), proto=proto)


def _parse_ban(raw: object) -> BanRule:
    data = _mapping(raw, "intrusion_prevention[]")
    service = _string(data.get("service"), "intrusion_prevention[].service")
    threshold = _positive_int(data.get("threshold", 5), f"intrusion_prevention.{service}.threshold")
    port = data.get("port")
    return BanRule(
        service=service,
        threshold=threshold,
        find_time=_positive_int(data.get("find_time", 600), f"{service}.find_time"),
        ban_time=_positive_int(data.get("ban_time", 3600), f"{service}.ban_time"),
        port=str(port) if port is not None else None,
    )


def _parse_file(raw: object) -> ManagedFile:
    data = _mapping(raw, "files[]")
    path = _string(data.get("path"), "files[].path")
    if not path.startswith("/"):
        raise DesiredStateError(f"Managed file path '{path}' must be absolute.", resource=path)
    content = data.get("content")
    if not isinstance(content, str):
        raise DesiredStateError(f"Managed file '{path}' requires string content.", resource=path)
    return ManagedFile(
        path=path,
        content=content,
        mode=_mode(data.get("mode", 0o644), path),
        owner=_string(data.get("owner", "root"), f"{path}.owner"),
        group=_string(data.get("group", "root"), f"{path}.group"),
        notify=tuple(
            _string(item, f"{path}.notify[]")
            for item in _sequence(data.get("notify"), f"{path}.notify")
        ),
    )


def _parse_service(raw: object) -> ServiceSpec:
    if isinstance(raw, Mapping):
        return ServiceSpec(name=_string(raw.get("name"), "services[].name"))
    return ServiceSpec(name=_string(raw, "services[]"))


def _parse_certificate(raw: object, renew_before_days: int) -> CertificateSpec:
    data = _mapping(raw, "certificates[]")
    domain = _string(data.get("domain"), "certificates[].domain")
    return CertificateSpec(
        domain=domain,
        email=_string(data.get("email"), f"certificates.{domain}.email"),
        webroot=_string(data.get("webroot", "/var/www/html"), f"certificates.{domain}.webroot"),
        extra_domains=tuple(
            _string(item, f"certificates.{domain}.extra_domains[]")
            for item in _sequence(data.get("extra_domains"), f"certificates.{domain}.extra_domains")
        ),
        renew_before_days=int(data.get("renew_before_days", renew_before_days)),
    )


def _parse_site(raw: object) -> ProxySite:
    data = _mapping(raw, "proxy.sites[]")
    name = _string(data.get("name"), "proxy.sites[].name")
    if not _SITE_PATTERN.match(name):
        raise DesiredStateError(f"Invalid proxy site name '{name}'.", resource=f"proxy:{name}")
    server_names = tuple(
        _string(item, f"{name}.server_names[]")
        for item in _sequence(data.get("server_names"), f"{name}.server_names")
    )
    if not server_names:
        raise DesiredStateError(
            f"Proxy site '{name}' needs at least one server name.", resource=f"proxy:{name}"
        )
    routes = []
    for item in _sequence(data.get("routes"), f"{name}.routes"):
        route = _mapping(item, f"{name}.routes[]")
        routes.append(
            ProxyRoute(
                path=_string(route.get("path", "/"), f"{name}.routes[].path"),
                upstream=_string(route.get("upstream"), f"{name}.routes[].upstream"),
            )
        )
    if not routes:
        raise DesiredStateError(
            f"Proxy site '{name}' needs at least one route.", resource=f"proxy:{name}"
        )
    _ensure_unique(f"route in site '{name}'", [route.path for route in routes])

    rate_limit = None
    if data.get("rate_limit") is not None:
        limit = _mapping(data["rate_limit"], f"{name}.rate_limit")
        rate = _string(limit.get("rate", "10r/s"), f"{name}.rate_limit.rate")
        if not _RATE_PATTERN.match(rate):
            raise DesiredStateError(
                f"Invalid rate '{rate}' for proxy site '{name}'.", resource=f"proxy:{name}"
            )
        rate_limit = RateLimit(
            rate=rate,
            burst=_positive_int(limit.get("burst", 20), f"{name}.rate_limit.burst"),
        )
    tls = data.get("tls")
    return ProxySite(
        name=name,
        server_names=server_names,
        routes=tuple(routes),
        tls=_string(tls, f"{name}.tls") if tls else None,
        rate_limit=rate_limit,
        client_max_body_size=_string(
            data.get("client_max_body_size", "10m"), f"{name}.client_max_body_size"
        ),
    )


# ----------------------------------------------------------------------
# Primitive validators
# ----------------------------------------------------------------------
def _mapping(value: object, label: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise DesiredStateError(f"Expected {label} to be a mapping.")
    return value


def _sequence(value: object, label: str) -> Sequence[object]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise DesiredStateError(f"Expected {label} to be a list.")
    return value


def _string(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise DesiredStateError(f"Expected {label} to be a non-empty string.")
    return value


def _port(value: object, label: str) -> int:
    port = _positive_int(value, label)
    if port > 65535:
        raise DesiredStateError(f"{label} must be a valid TCP/UDP port.")
    return port


def _positive_int(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise DesiredStateError(f"Expected {label} to be an integer.")
    try:
        number = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise DesiredStateError(f"Expected {label} to be an integer.") from exc
    if number <= 0:
        raise DesiredStateError(f"{label} must be greater than zero.")
    return number


def _mode(value: object, path: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        mode = value
    elif isinstance(value, str):
        try:
            mode = int(value, 8)
        except ValueError as exc:
            raise DesiredStateError(f"Invalid mode '{value}' for {path}.", resource=path) from exc
    else:
        raise DesiredStateError(f"Invalid mode for {path}.", resource=path)
    if not 0 <= mode <= 0o7777:
        raise DesiredStateError(f"Mode out of range for {path}.", resource=path)
    return mode


__all__ = [
    "BanRule",
    "CertificateSpec",
    "DesiredHostState",
    "FirewallPolicy",
    "FirewallRule",
    "ManagedFile",
    "ProxyRoute",
    "ProxySite",
    "RateLimit",
    "SSHD_DROPIN_PATH",
    "SSHHardening",
    "ServiceSpec",
    "UserSpec",
    "load_desired_state",
    "parse_desired_state",
]
