"""Tests for applying convergence actions to a host."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from fakes import FakeHost

from vpsctl.desired import DesiredHostState, parse_desired_state
from vpsctl.logging import StructuredLogger
from vpsctl.probe import HostProber, ProbeScope
from vpsctl.provision import (
    ActionKind,
    ActionStatus,
    ConfigRenderer,
    ConvergenceAction,
    Phase,
    USER_SECRET_SCOPE,
    apply,
    converge,
    required_checks,
)
from vpsctl.secrets import EnvSecretStore, SecretResolver
from vpsctl.templates import TemplateEngine

PASSWORD = "hunter2-but-longer"

DESIRED = {
    "packages": ["nginx", "fail2ban"],
    "users": [
        {
            "name": "deploy",
            "groups": ["www-data"],
            "authorized_keys": ["ssh-ed25519 AAAAC3Nza ci@example"],
            "password_secret": "deploy-password",
        }
    ],
    "ssh": {"port": 22},
    "firewall": {"default": "deny", "allow": ["22/tcp", "80/tcp", "443/tcp"]},
    "intrusion_prevention": [{"service": "sshd", "threshold": 3}],
    "files": [
        {"path": "/etc/nginx/conf.d/gzip.conf", "content": "gzip on;\n", "notify": ["nginx"]}
    ],
    "services": ["nginx", "fail2ban"],
}


@pytest.fixture
def renderer() -> ConfigRenderer:
    """Return a renderer using the packaged templates."""
    return ConfigRenderer(TemplateEngine.with_overrides(None))


def _resolver(logger: StructuredLogger | None = None) -> SecretResolver:
    return SecretResolver(
        EnvSecretStore({"VPSCTL_SECRET_DEPLOY_PASSWORD": PASSWORD}),
        {"deploy-password": [USER_SECRET_SCOPE]},
        logger=logger,
    )


def _plan(
    host: FakeHost, desired: DesiredHostState, renderer: ConfigRenderer
) -> tuple[ConvergenceAction, ...]:
    prober = HostProber(host.providers(), sleep=lambda _: None)
    probed = prober.probe(required_checks(desired), scope=ProbeScope.from_desired(desired))
    return converge(desired, probed, renderer=renderer)


def test_bare_host_converges_and_second_run_is_a_no_op(renderer: ConfigRenderer) -> None:
    """After one run a fresh plan is empty and nothing else changes."""
    host = FakeHost()
    desired = parse_desired_state(DESIRED)

    report = apply(
        _plan(host, desired, renderer),
        host.providers(),
        desired_checksum=desired.checksum,
        resolver=_resolver(),
    )

    assert report.succeeded
    assert report.exit_code == 0
    assert report.count(ActionStatus.APPLIED) == len(report.outcomes)
    assert host.packages == {"nginx", "fail2ban"}
    assert host.default_incoming == "deny"
    assert host.allowed == ["22/tcp", "80/tcp", "443/tcp"]
    assert host.passwords["deploy"] == PASSWORD
    assert host.reloads == ["fail2ban", "nginx", "ssh"]

    mutations = list(host.mutations)
    assert _plan(host, desired, renderer) == ()
    assert host.mutations == mutations


def test_reapplying_a_stale_plan_skips_everything(renderer: ConfigRenderer) -> None:
    """Each action re-checks the host, so replaying a plan changes nothing."""
    host = FakeHost()
    desired = parse_desired_state(DESIRED)
    actions = _plan(host, desired, renderer)
    apply(actions, host.providers(), resolver=_resolver())
    mutations = list(host.mutations)

    replay = apply(actions, host.providers(), resolver=_resolver())

    assert host.mutations == mutations
    assert replay.count(ActionStatus.SKIPPED) == len(actions)
    reloads = [o for o in replay.outcomes if o.action.kind is ActionKind.RELOAD_SERVICE]
    assert {o.detail for o in reloads} == {"no triggering change was applied"}


def test_first_failure_halts_the_run(renderer: ConfigRenderer) -> None:
    """Later actions are reported as not run and earlier ones stay applied."""
    host = FakeHost(broken_packages={"nginx"})
    desired = parse_desired_state({"packages": ["curl", "nginx", "git"], "services": ["nginx"]})

    report = apply(_plan(host, desired, renderer), host.providers())

    statuses = [(o.action.id, o.status) for o in report.outcomes]
    assert statuses == [
        ("install-package:curl", ActionStatus.APPLIED),
        ("install-package:nginx", ActionStatus.FAILED),
        ("install-package:git", ActionStatus.NOT_RUN),
        ("enable-service:nginx", ActionStatus.NOT_RUN),
    ]
    assert report.exit_code == 4
    failed = report.failed
    assert failed is not None
    assert failed.error is not None and failed.error["action"] == "install-package:nginx"
    assert report.outcomes[2].detail == "halted by earlier failure"
    assert host.packages == {"curl"}


def test_secret_value_never_reaches_report_or_logs(
    tmp_path: Path, renderer: ConfigRenderer
) -> None:
    """Passwords are applied but only their names are recorded."""
    host = FakeHost()
    desired = parse_desired_state({"users": DESIRED["users"]})
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("provision", target={"host": host.name}) as op:
        report = apply(
            _plan(host, desired, renderer),
            host.providers(),
            resolver=_resolver(logger),
            logger=logger,
        )
        op.success("done", context={"note": f"used {PASSWORD}", "report": report.to_dict()})

    assert host.passwords["deploy"] == PASSWORD
    assert PASSWORD not in json.dumps(report.to_dict())
    audit = (tmp_path / "logs" / "audit.jsonl").read_text(encoding="utf-8")
    operations = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert PASSWORD not in audit
    assert PASSWORD not in operations
    events = [json.loads(line)["event"] for line in audit.splitlines()]
    assert events == ["secret.resolve", "provision.apply"]


def test_password_without_resolver_fails_before_creating_user(renderer: ConfigRenderer) -> None:
    """A user needing a secret is not created when secrets are unavailable."""
    host = FakeHost()
    desired = parse_desired_state({"users": DESIRED["users"]})

    report = apply(_plan(host, desired, renderer), host.providers())

    assert report.exit_code == 2
    assert "deploy" not in host.users


def test_default_deny_is_refused_without_ssh_rule() -> None:
    """The firewall is never closed while the SSH rule is missing."""
    host = FakeHost()
    action = ConvergenceAction(
        id="firewall-default:deny",
        kind=ActionKind.FIREWALL_DEFAULT,
        phase=Phase.FIREWALL,
        resource="deny",
        description="Set default inbound policy to deny",
        params={"policy": "deny", "ssh_rule": "22/tcp"},
    )

    report = apply([action], host.providers())

    (outcome,) = report.outcomes
    assert outcome.status is ActionStatus.FAILED
    assert "22/tcp" in outcome.detail
    assert report.exit_code == 2
    assert host.default_incoming == "allow"
    assert host.firewall_active is False


def test_invalid_proxy_config_never_goes_live(renderer: ConfigRenderer) -> None:
    """A site failing validation aborts with a syntax error and no reload."""
    host = FakeHost(invalid_sites={"app"})
    desired = parse_desired_state(
        {
            "proxy": {
                "sites": [
                    {
                        "name": "app",
                        "server_names": ["app.example.com"],
                        "routes": [{"path": "/", "upstream": "http://127.0.0.1:8080"}],
                    }
                ]
            }
        }
    )

    report = apply(_plan(host, desired, renderer), host.providers())

    (outcome,) = report.outcomes
    assert outcome.status is ActionStatus.FAILED
    assert outcome.error is not None
    assert outcome.error["resource"] == "/staging/vpsctl-app.conf"
    assert report.exit_code == 2
    assert host.sites == {}
    assert host.mutations == []


def test_report_serialises_summary(renderer: ConfigRenderer) -> None:
    """The report summary counts every status."""
    host = FakeHost(packages={"curl"})
    desired = parse_desired_state({"packages": ["curl", "git"]})

    payload = apply(_plan(host, desired, renderer), host.providers()).to_dict()

    assert payload["summary"] == {"applied": 1, "skipped": 0, "failed": 0, "not-run": 0}
    assert payload["exit_code"] == 0
    assert payload["dry_run"] is False
    assert [action["id"] for action in payload["actions"]] == ["install-package:git"]
