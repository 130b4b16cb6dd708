"""Read-only checks that gather facts from a host."""
from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .models import CheckDefinition, CheckKind, ProbeScope

if TYPE_CHECKING:
    from ..providers import HostProviders


def check_packages(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return the installed packages (narrowed to the scope when given)."""
    installed = providers.packages.installed(scope.packages)
    return {"installed": sorted(installed)}


def check_users(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return account details and ``authorized_keys`` digests."""
    users: dict[str, Any] = {}
    for name in scope.users:
        info = providers.users.get(name)
        if info is None:
            users[name] = None
            continue
        entry = info.to_dict()
        entry["authorized_keys_sha256"] = providers.users.authorized_keys_digest(name)
        users[name] = entry
    return users


def check_firewall(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return ufw status plus the managed fail2ban jail digests."""
    payload: dict[str, Any] = providers.firewall.status().to_dict()
    payload["jails"] = providers.jails.digests()
    return payload


def check_files(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return digest, mode and ownership of the scoped files."""
    files: dict[str, Any] = {}
    for path in scope.files:
        state = providers.files.stat(path)
        files[path] = state.to_dict() if state else None
    return files


def check_services(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return whether the scoped units are enabled and active."""
    return {name: providers.services.state(name).to_dict() for name in scope.services}


def check_certificates(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return expiry and names of the scoped certificates."""
    certificates: dict[str, Any] = {}
    for domain in scope.certificates:
        info = providers.certificates.expiry(domain)
        certificates[domain] = info.to_dict() if info else None
    return certificates


def check_proxy(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return the live configuration digest of each scoped site."""
    return {name: providers.proxy.live_digest(name) for name in scope.proxy_sites}


def check_containers(providers: HostProviders, scope: ProbeScope) -> Mapping[str, Any]:
    """Return the containers managed under the configured name prefix."""
    return {
        info.name: info.to_dict()
        for info in providers.containers.list(f"{scope.container_prefix}-")
    }


DEFAULT_CHECKS: Mapping[CheckKind, CheckDefinition] = {
    definition.kind: definition
    for definition in (
        CheckDefinition(CheckKind.PACKAGES, check_packages),
        CheckDefinition(CheckKind.USERS, check_users),
        CheckDefinition(CheckKind.FIREWALL, check_firewall),
        CheckDefinition(CheckKind.FILES, check_files),
        CheckDefinition(CheckKind.SERVICES, check_services),
        CheckDefinition(CheckKind.CERTIFICATES, check_certificates),
        CheckDefinition(CheckKind.PROXY, check_proxy),
        CheckDefinition(CheckKind.CONTAINERS, check_containers),
    )
}


__all__ = ["DEFAULT_CHECKS"]
