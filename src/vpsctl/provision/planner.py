"""Structural diff between desired and probed host state.

``converge`` never touches the host. It compares each resource type of the
desired state with the probed facts and returns the ordered actions needed to
close the gap:

``users -> packages -> firewall -> service config -> service reload``

Within the firewall phase allow rules precede the default-policy switch so SSH
access survives, and intrusion-prevention jails come last. Reloads are
deduplicated per service and remember which actions triggered them.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from ..desired import DesiredHostState, ManagedFile
from ..errors import PreconditionFailed
from ..probe import CheckKind, ProbedHostState
from ..providers.files import content_digest
from ..providers.users import render_authorized_keys
from .actions import ActionKind, ConvergenceAction, Phase
from .render import ConfigRenderer

PARTIAL_POLICIES = ("fail", "converge")

_ROLLBACK_HINTS: Mapping[ActionKind, str] = {
    ActionKind.CREATE_USER: "userdel --remove {resource}",
    ActionKind.UPDATE_USER_GROUPS: "gpasswd --delete {resource} <group>",
    ActionKind.INSTALL_PACKAGE: "apt-get remove {resource}",
    ActionKind.FIREWALL_ALLOW: "ufw delete allow {resource}",
    ActionKind.FIREWALL_DEFAULT: "ufw default allow incoming",
    ActionKind.ENABLE_SERVICE: "systemctl disable --now {resource}",
}


def required_checks(desired: DesiredHostState) -> tuple[CheckKind, ...]:
    """Return the check kinds needed to plan ``desired``."""
    kinds: list[CheckKind] = []
    if desired.users:
        kinds.append(CheckKind.USERS)
    if desired.packages:
        kinds.append(CheckKind.PACKAGES)
    if desired.firewall is not None or desired.bans:
        kinds.append(CheckKind.FIREWALL)
    if desired.files or desired.ssh is not None:
        kinds.append(CheckKind.FILES)
    if desired.services:
        kinds.append(CheckKind.SERVICES)
    if desired.certificates:
        kinds.append(CheckKind.CERTIFICATES)
    if desired.proxy_sites:
        kinds.append(CheckKind.PROXY)
    return tuple(kinds)


class _Plan:
    """Accumulates actions while the diff is computed."""

    def __init__(self) -> None:
        self.actions: list[ConvergenceAction] = []
        self.notifications: dict[str, list[str]] = {}

    def add(
        self,
        kind: ActionKind,
        phase: Phase,
        resource: str,
        description: str,
        *,
        params: Mapping[str, Any] | None = None,
        secrets: tuple[str, ...] = (),
        notify: tuple[str, ...] = (),
        rollback: str | None = None,
    ) -> ConvergenceAction:
        hint = rollback
        if hint is None and kind in _ROLLBACK_HINTS:
            hint = _ROLLBACK_HINTS[kind].format(resource=resource)
        action = ConvergenceAction(
            id=f"{kind.value}:{resource}",
            kind=kind,
            phase=phase,
            resource=resource,
            description=description,
            params=dict(params or {}),
            secrets=secrets,
            notify=notify,
            rollback=hint,
        )
        self.actions.append(action)
        for service in notify:
            self.notifications.setdefault(service, []).append(action.id)
        return action

    def finish(self) -> tuple[ConvergenceAction, ...]:
        for service, triggers in self.notifications.items():
            self.actions.append(
                ConvergenceAction(
                    id=f"{ActionKind.RELOAD_SERVICE.value}:{service}",
                    kind=ActionKind.RELOAD_SERVICE,
                    phase=Phase.RELOAD,
                    resource=service,
                    description=f"Reload {service} to pick up new configuration",
                    params={"service": service},
                    triggered_by=tuple(triggers),
                )
            )
        # sorted() is stable, so declaration order survives within a phase.
        return tuple(sorted(self.actions, key=lambda action: action.phase))


def converge(
    desired: DesiredHostState,
    probed: ProbedHostState,
    *,
    renderer: ConfigRenderer,
    on_partial: str = "fail",
) -> tuple[ConvergenceAction, ...]:
    """Return the ordered actions that move ``probed`` towards ``desired``.

    When a fact the plan depends on is partial (or was not probed) the plan is
    refused with :class:`PreconditionFailed`, unless ``on_partial`` is
    ``"converge"``: the affected resources are then planned as divergent and
    each action re-checks its own precondition when applied.
    """
    if on_partial not in PARTIAL_POLICIES:
        raise ValueError(f"Unsupported partial-fact policy '{on_partial}'.")

    def facts(kind: CheckKind) -> tuple[Mapping[str, Any], bool]:
        fact = probed.fact(kind)
        if fact is not None and not fact.is_partial:
            return fact.value, False
        reason = fact.error if fact is not None else "not probed"
        if on_partial == "fail":
            raise PreconditionFailed(
                f"Cannot plan {kind.value}: facts are partial ({reason}).",
                host=probed.host,
                resource=kind.value,
            )
        return {}, True

    plan = _Plan()
    if desired.users:
        _plan_users(plan, desired, *facts(CheckKind.USERS))
    if desired.packages:
        _plan_packages(plan, desired, *facts(CheckKind.PACKAGES))
    if desired.firewall is not None or desired.bans:
        _plan_firewall(plan, desired, renderer, *facts(CheckKind.FIREWALL))
    managed_files = renderer.managed_files(desired)
    if managed_files:
        _plan_files(plan, managed_files, *facts(CheckKind.FILES))
    if desired.services:
        _plan_services(plan, desired, *facts(CheckKind.SERVICES))
    if desired.certificates:
        _plan_certificates(plan, desired, probed.captured_at, *facts(CheckKind.CERTIFICATES))
    if desired.proxy_sites:
        _plan_proxy(plan, desired, renderer, *facts(CheckKind.PROXY))
    return plan.finish()


# ----------------------------------------------------------------------
# Per resource type
# ----------------------------------------------------------------------
def _plan_users(
    plan: _Plan, desired: DesiredHostState, observed: Mapping[str, Any], unknown: bool
) -> None:
    for user in desired.users:
        current = observed.get(user.name)
        keys_digest = (
            content_digest(render_authorized_keys(user.authorized_keys))
            if user.authorized_keys
            else None
        )
        if current is None:
            plan.add(
                ActionKind.CREATE_USER,
                Phase.USERS,
                user.name,
                f"Create user {user.name}",
                params={
                    "name": user.name,
                    "shell": user.shell,
                    "groups": list(user.groups),
                    "system": user.system,
                    "password_secret": user.password_secret,
                },
                secrets=(user.password_secret,) if user.password_secret else (),
            )
            if unknown and user.groups:
                plan.add(
                    ActionKind.UPDATE_USER_GROUPS,
                    Phase.USERS,
                    user.name,
                    f"Add {user.name} to {', '.join(user.groups)}",
                    params={"name": user.name, "groups": list(user.groups)},
                )
        else:
            missing = sorted(set(user.groups) - set(current.get("groups") or ()))
            if missing:
                plan.add(
                    ActionKind.UPDATE_USER_GROUPS,
                    Phase.USERS,
                    user.name,
                    f"Add {user.name} to {', '.join(missing)}",
                    params={"name": user.name, "groups": missing},
                )
        if keys_digest is not None and (
            current is None or current.get("authorized_keys_sha256") != keys_digest
        ):
            plan.add(
                ActionKind.AUTHORIZED_KEYS,
                Phase.USERS,
                user.name,
                f"Install {len(user.authorized_keys)} authorized key(s) for {user.name}",
                params={
                    "name": user.name,
                    "keys": list(user.authorized_keys),
                    "digest": keys_digest,
                },
            )


def _plan_packages(
    plan: _Plan, desired: DesiredHostState, observed: Mapping[str, Any], unknown: bool
) -> None:
    installed = set(observed.get("installed") or ())
    for package in desired.packages:
        if package not in installed:
            plan.add(
                ActionKind.INSTALL_PACKAGE,
                Phase.PACKAGES,
                package,
                f"Install package {package}",
                params={"name": package},
            )


def _plan_firewall(
    plan: _Plan,
    desired: DesiredHostState,
    renderer: ConfigRenderer,
    observed: Mapping[str, Any],
    unknown: bool,
) -> None:
    policy = desired.firewall
    if policy is not None:
        allowed = set(observed.get("allowed") or ())
        for rule in policy.allow:
            if rule.key not in allowed:
                plan.add(
                    ActionKind.FIREWALL_ALLOW,
                    Phase.FIREWALL,
                    rule.key,
                    f"Allow inbound {rule.key}",
                    params={"rule": rule.key},
                )
        if not observed.get("active") or observed.get("default_incoming") != policy.default:
            ssh_port = desired.ssh.port if desired.ssh else 22
            plan.add(
                ActionKind.FIREWALL_DEFAULT,
                Phase.FIREWALL,
                policy.default,
                f"Set default inbound policy to {policy.default} and enable the firewall",
                params={"policy": policy.default, "ssh_rule": f"{ssh_port}/tcp"},
            )

    jails = observed.get("jails") or {}
    for ban in desired.bans:
        text = renderer.jail(ban)
        digest = content_digest(text)
        if jails.get(ban.service) != digest:
            plan.add(
                ActionKind.BAN_ON_FAILURE,
                Phase.FIREWALL,
                ban.service,
                f"Ban clients after {ban.threshold} failures on {ban.service}",
                params={
                    "service": ban.service,
                    "threshold": ban.threshold,
                    "content": text,
                    "digest": digest,
                },
                notify=("fail2ban",),
                rollback=f"rm /etc/fail2ban/jail.d/vpsctl-{ban.service}.local",
            )


def _plan_files(
    plan: _Plan,
    files: tuple[ManagedFile, ...],
    observed: Mapping[str, Any],
    unknown: bool,
) -> None:
    for item in files:
        current = observed.get(item.path)
        expected = {
            "sha256": item.sha256,
            "mode": f"{item.mode:04o}",
            "owner": item.owner,
            "group": item.group,
        }
        if current == expected:
            continue
        plan.add(
            ActionKind.WRITE_FILE,
            Phase.SERVICE_CONFIG,
            item.path,
            f"Write {item.path}",
            params={
                "path": item.path,
                "content": item.content,
                "mode": item.mode,
                "owner": item.owner,
                "group": item.group,
                "digest": item.sha256,
            },
            notify=item.notify,
            rollback="restore the previous file content" if current else f"rm {item.path}",
        )


def _plan_services(
    plan: _Plan, desired: DesiredHostState, observed: Mapping[str, Any], unknown: bool
) -> None:
    for service in desired.services:
        current = observed.get(service.name) or {}
        if current.get("enabled") and current.get("active"):
            continue
        plan.add(
            ActionKind.ENABLE_SERVICE,
            Phase.SERVICE_CONFIG,
            service.name,
            f"Enable and start {service.name}",
            params={"name": service.name},
        )


def _plan_certificates(
    plan: _Plan,
    desired: DesiredHostState,
    now: datetime,
    observed: Mapping[str, Any],
    unknown: bool,
) -> None:
    proxied = {site.tls for site in desired.proxy_sites if site.tls}
    for cert in desired.certificates:
        current = observed.get(cert.domain)
        names = sorted({cert.domain, *cert.extra_domains})
        params = {
            "domain": cert.domain,
            "email": cert.email,
            "webroot": cert.webroot,
            "extra_domains": list(cert.extra_domains),
            "names": names,
            "renew_before_days": cert.renew_before_days,
        }
        notify = ("nginx",) if cert.domain in proxied else ()
        if current is None or not set(names) <= set(current.get("names") or ()):
            plan.add(
                ActionKind.ISSUE_CERTIFICATE,
                Phase.SERVICE_CONFIG,
                cert.domain,
                f"Issue certificate for {', '.join(names)}",
                params=params,
                notify=notify,
            )
            continue
        expires_at = datetime.fromisoformat(str(current["expires_at"]))
        if expires_at - now <= timedelta(days=cert.renew_before_days):
            plan.add(
                ActionKind.RENEW_CERTIFICATE,
                Phase.SERVICE_CONFIG,
                cert.domain,
                f"Renew certificate for {cert.domain} (expires {expires_at:%Y-%m-%d})",
                params=params,
                notify=notify,
            )


def _plan_proxy(
    plan: _Plan,
    desired: DesiredHostState,
    renderer: ConfigRenderer,
    observed: Mapping[str, Any],
    unknown: bool,
) -> None:
    for site in desired.proxy_sites:
        text = renderer.site(site)
        digest = content_digest(text)
        if observed.get(site.name) == digest:
            continue
        plan.add(
            ActionKind.CONFIGURE_PROXY,
            Phase.SERVICE_CONFIG,
            site.name,
            f"Configure reverse proxy site {site.name}",
            params={"site": site.name, "content": text, "digest": digest},
            rollback="previous site configuration is restored automatically on failure",
        )


__all__ = ["PARTIAL_POLICIES", "converge", "required_checks"]
