"""Apply convergence actions to a host.

Each action first re-checks its precondition against the live host and is
skipped when already satisfied, which makes re-running a plan (or a fresh plan
after an interrupted run) safe. The first failure halts the queue; actions
already applied stay applied and the remainder is reported as ``not-run``.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from ..errors import (
    ActionFailed,
    CommandError,
    PreconditionFailed,
    ProxyConfigSyntaxError,
    VpsctlError,
)
from ..exit_codes import ExitCode
from .actions import ActionKind, ActionOutcome, ActionStatus, ConvergenceAction, ConvergenceReport

if TYPE_CHECKING:
    from ..logging import StructuredLogger
    from ..providers import HostProviders
    from ..secrets import SecretResolver

_LOG = logging.getLogger(__name__)

USER_SECRET_SCOPE = "provision.user"


@dataclass(slots=True)
class ExecutionContext:
    """Collaborators an action handler may use."""

    providers: HostProviders
    resolver: SecretResolver | None = None
    now: Callable[[], datetime] = lambda: datetime.now(UTC)


Check = Callable[[ExecutionContext, ConvergenceAction], bool]
Execute = Callable[[ExecutionContext, ConvergenceAction], str]


# ----------------------------------------------------------------------
# Handlers: (is-satisfied, execute) per action kind
# ----------------------------------------------------------------------
def _user_exists(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    return ctx.providers.users.get(action.params["name"]) is not None


def _create_user(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    params = action.params
    secret_name = params.get("password_secret")
    if secret_name and ctx.resolver is None:
        raise PreconditionFailed(
            f"User {params['name']} needs secret '{secret_name}' but no resolver is set.",
            action=action.id,
            resource=secret_name,
        )
    ctx.providers.users.create(
        params["name"],
        shell=params["shell"],
        groups=params.get("groups") or (),
        system=bool(params.get("system")),
    )
    if secret_name and ctx.resolver is not None:
        with ctx.resolver.lease(secret_name, USER_SECRET_SCOPE) as secret:
            ctx.providers.users.set_password(params["name"], secret.reveal())
        return f"created {params['name']} with password from secret '{secret_name}'"
    return f"created {params['name']}"


def _groups_present(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    info = ctx.providers.users.get(action.params["name"])
    return info is not None and set(action.params["groups"]) <= set(info.groups)


def _add_groups(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.users.add_groups(action.params["name"], action.params["groups"])
    return f"added to {', '.join(action.params['groups'])}"


def _keys_match(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    digest = ctx.providers.users.authorized_keys_digest(action.params["name"])
    return digest == action.params["digest"]


def _write_keys(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.users.set_authorized_keys(action.params["name"], action.params["keys"])
    return f"wrote {len(action.params['keys'])} key(s)"


def _package_installed(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    return ctx.providers.packages.is_installed(action.params["name"])


def _install_package(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.packages.install([action.params["name"]])
    return "installed"


def _rule_allowed(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    return action.params["rule"] in ctx.providers.firewall.status().allowed


def _allow_rule(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.firewall.allow(action.params["rule"])
    return f"allowed {action.params['rule']}"


def _default_policy_set(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    status = ctx.providers.firewall.status()
    return status.active and status.default_incoming == action.params["policy"]


def _set_default_policy(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    policy = action.params["policy"]
    if policy != "allow":
        ssh_rule = action.params["ssh_rule"]
        if ssh_rule not in ctx.providers.firewall.status().allowed:
            raise PreconditionFailed(
                f"Refusing to set default {policy} before {ssh_rule} is allowed.",
                action=action.id,
                resource=ssh_rule,
            )
    ctx.providers.firewall.set_default(policy)
    return f"default incoming {policy}, firewall enabled"


def _jail_current(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    return ctx.providers.jails.digests().get(action.params["service"]) == action.params["digest"]


def _write_jail(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.jails.write(action.params["service"], action.params["content"])
    return f"jail for {action.params['service']} written"


def _file_current(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    state = ctx.providers.files.stat(action.params["path"])
    return (
        state is not None
        and state.sha256 == action.params["digest"]
        and state.mode == action.params["mode"]
        and state.owner == action.params["owner"]
        and state.group == action.params["group"]
    )


def _write_file(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    params = action.params
    ctx.providers.files.write(
        params["path"],
        params["content"],
        mode=params["mode"],
        owner=params["owner"],
        group=params["group"],
    )
    return f"wrote {params['path']} ({params['mode']:04o})"


def _service_running(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    state = ctx.providers.services.state(action.params["name"])
    return state.enabled and state.active


def _enable_service(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.services.enable_now(action.params["name"])
    return "enabled and started"


def _certificate_covers(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    info = ctx.providers.certificates.expiry(action.params["domain"])
    return info is not None and set(action.params["names"]) <= set(info.names)


def _issue_certificate(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    params = action.params
    ctx.providers.certificates.issue(
        params["domain"],
        params["email"],
        params["webroot"],
        extra_domains=params.get("extra_domains") or (),
    )
    return f"issued for {', '.join(params['names'])}"


def _certificate_fresh(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    info = ctx.providers.certificates.expiry(action.params["domain"])
    if info is None:
        return False
    window = timedelta(days=action.params["renew_before_days"])
    return info.not_after - ctx.now() > window


def _renew_certificate(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.certificates.renew(action.params["domain"])
    return "renewed"


def _site_current(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    return ctx.providers.proxy.live_digest(action.params["site"]) == action.params["digest"]


def _configure_site(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    proxy = ctx.providers.proxy
    site, text = action.params["site"], action.params["content"]
    validation = proxy.validate(site, text)
    if not validation.valid:
        raise ProxyConfigSyntaxError(
            f"Configuration for site '{site}' failed validation: {validation.output}",
            action=action.id,
            resource=validation.staged_path,
        )
    proxy.reload(site, text)
    return "validated, activated and reloaded nginx"


def _never(ctx: ExecutionContext, action: ConvergenceAction) -> bool:
    return False


def _reload_service(ctx: ExecutionContext, action: ConvergenceAction) -> str:
    ctx.providers.services.reload(action.params["service"])
    return "reloaded"


HANDLERS: Mapping[ActionKind, tuple[Check, Execute]] = {
    ActionKind.CREATE_USER: (_user_exists, _create_user),
    ActionKind.UPDATE_USER_GROUPS: (_groups_present, _add_groups),
    ActionKind.AUTHORIZED_KEYS: (_keys_match, _write_keys),
    ActionKind.INSTALL_PACKAGE: (_package_installed, _install_package),
    ActionKind.FIREWALL_ALLOW: (_rule_allowed, _allow_rule),
    ActionKind.FIREWALL_DEFAULT: (_default_policy_set, _set_default_policy),
    ActionKind.BAN_ON_FAILURE: (_jail_current, _write_jail),
    ActionKind.WRITE_FILE: (_file_current, _write_file),
    ActionKind.ENABLE_SERVICE: (_service_running, _enable_service),
    ActionKind.ISSUE_CERTIFICATE: (_certificate_covers, _issue_certificate),
    ActionKind.RENEW_CERTIFICATE: (_certificate_fresh, _renew_certificate),
    ActionKind.CONFIGURE_PROXY: (_site_current, _configure_site),
    ActionKind.RELOAD_SERVICE: (_never, _reload_service),
}


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def apply(
    actions: Iterable[ConvergenceAction],
    providers: HostProviders,
    *,
    desired_checksum: str = "",
    resolver: SecretResolver | None = None,
    logger: StructuredLogger | None = None,
    now: Callable[[], datetime] | None = None,
) -> ConvergenceReport:
    """Apply ``actions`` in order and return the convergence report."""
    ordered = list(actions)
    clock = now or (lambda: datetime.now(UTC))
    ctx = ExecutionContext(providers=providers, resolver=resolver, now=clock)
    started_at = clock()
    outcomes: list[ActionOutcome] = []
    statuses: dict[str, ActionStatus] = {}
    exit_code: int = ExitCode.OK
    halted = False

    for action in ordered:
        if halted:
            outcomes.append(
                ActionOutcome(action, ActionStatus.NOT_RUN, "halted by earlier failure")
            )
            continue

        start = time.perf_counter()
        if action.kind is ActionKind.RELOAD_SERVICE and action.triggered_by and all(
            statuses.get(trigger) is ActionStatus.SKIPPED for trigger in action.triggered_by
        ):
            outcome = ActionOutcome(
                action, ActionStatus.SKIPPED, "no triggering change was applied", 0
            )
        else:
            outcome = _run_action(ctx, action, start)
            if outcome.status is ActionStatus.FAILED:
                halted = True
                exit_code = int((outcome.error or {}).get("exit_code", ExitCode.PROVIDER))
        statuses[action.id] = outcome.status
        outcomes.append(outcome)
        _LOG.info("%s %s: %s", action.id, outcome.status.value, outcome.detail)

    report = ConvergenceReport(
        host=providers.host,
        desired_checksum=desired_checksum,
        started_at=started_at,
        finished_at=clock(),
        outcomes=tuple(outcomes),
        exit_code=exit_code,
    )
    if logger is not None:
        logger.audit(
            "provision.apply",
            host=report.host,
            desired_checksum=desired_checksum,
            summary={status.value: report.count(status) for status in ActionStatus},
        )
    return report


def _run_action(ctx: ExecutionContext, action: ConvergenceAction, start: float) -> ActionOutcome:
    check, execute = HANDLERS[action.kind]
    try:
        if check(ctx, action):
            return ActionOutcome(
                action, ActionStatus.SKIPPED, "already satisfied", _duration_ms(start)
            )
        detail = execute(ctx, action)
    except CommandError as exc:
        return _failed(action, ActionFailed(str(exc), host=ctx.providers.host), start)
    except VpsctlError as exc:
        return _failed(action, exc, start)
    except (LookupError, ValueError) as exc:
        return _failed(action, ActionFailed(str(exc), host=ctx.providers.host), start)
    return ActionOutcome(action, ActionStatus.APPLIED, detail, _duration_ms(start))


def _failed(action: ConvergenceAction, error: VpsctlError, start: float) -> ActionOutcome:
    if error.action is None:
        error.action = action.id
    if error.resource is None:
        error.resource = action.resource
    payload = error.context()
    payload["exit_code"] = int(error.exit_code)
    _LOG.error("%s failed: %s", action.id, error)
    return ActionOutcome(action, ActionStatus.FAILED, str(error), _duration_ms(start), payload)


__all__ = ["HANDLERS", "USER_SECRET_SCOPE", "ExecutionContext", "apply"]
