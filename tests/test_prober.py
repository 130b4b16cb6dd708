"""Tests for the host prober."""
from __future__ import annotations

import pytest
from fakes import FakeHost

from vpsctl.desired import parse_desired_state
from vpsctl.errors import HostUnreachable
from vpsctl.probe import CheckKind, FactStatus, HostProber, ProbeScope
from vpsctl.providers import UserInfo


def _prober(host: FakeHost, retries: int = 2) -> tuple[HostProber, list[float]]:
    sleeps: list[float] = []
    prober = HostProber(host.providers(), retries=retries, retry_delay=0.5, sleep=sleeps.append)
    return prober, sleeps


def test_probe_gathers_every_requested_fact() -> None:
    """Facts come back keyed by check kind with their values."""
    host = FakeHost(packages={"nginx", "curl"}, allowed=["22/tcp"], firewall_active=True)
    host.users["deploy"] = UserInfo("deploy", 1000, "/home/deploy", "/bin/bash", ("deploy",))
    prober, _ = _prober(host)

    probed = prober.probe(
        [CheckKind.PACKAGES, CheckKind.USERS, CheckKind.FIREWALL],
        scope=ProbeScope(packages=("nginx", "git"), users=("deploy", "ops")),
    )

    assert probed.host == "fake-host"
    assert probed.value(CheckKind.PACKAGES) == {"installed": ["nginx"]}
    users = probed.value(CheckKind.USERS)
    assert users["ops"] is None
    assert users["deploy"]["groups"] == ["deploy"]
    assert probed.value(CheckKind.FIREWALL)["allowed"] == ["22/tcp"]
    assert probed.partial_kinds == ()


def test_probe_does_not_mutate_host() -> None:
    """Probing is read-only."""
    host = FakeHost(packages={"nginx"})
    prober, _ = _prober(host)

    prober.probe()

    assert host.mutations == []


def test_failing_check_retries_then_succeeds() -> None:
    """A transient failure is retried within the budget."""
    host = FakeHost(packages={"nginx"}, failing_checks={"packages": 1})
    prober, sleeps = _prober(host)

    probed = prober.probe([CheckKind.PACKAGES])

    fact = probed.fact(CheckKind.PACKAGES)
    assert fact is not None
    assert fact.status is FactStatus.OK
    assert fact.attempts == 2
    assert sleeps == [0.5]


def test_exhausted_check_is_partial_not_fatal() -> None:
    """A check that keeps failing is marked partial while others complete."""
    host = FakeHost(packages={"nginx"}, failing_checks={"firewall": -1})
    prober, sleeps = _prober(host, retries=2)

    probed = prober.probe([CheckKind.PACKAGES, CheckKind.FIREWALL])

    firewall = probed.fact(CheckKind.FIREWALL)
    assert firewall is not None and firewall.is_partial
    assert firewall.attempts == 3
    assert "firewall query timed out" in (firewall.error or "")
    assert probed.partial_kinds == (CheckKind.FIREWALL,)
    assert probed.fact(CheckKind.PACKAGES).status is FactStatus.OK  # type: ignore[union-attr]
    assert sleeps == [0.5, 1.0]


def test_unreachable_host_is_fatal() -> None:
    """An unreachable host aborts the probe after the reachability retries."""
    host = FakeHost()
    host.transport.unreachable = True
    prober, sleeps = _prober(host, retries=1)

    with pytest.raises(HostUnreachable):
        prober.probe()

    assert sleeps == [0.5]


def test_scope_from_desired_includes_sshd_dropin() -> None:
    """Desired state narrows the probe to its own resources."""
    desired = parse_desired_state(
        {
            "packages": ["nginx"],
            "users": [{"name": "deploy"}],
            "ssh": {"port": 22},
            "services": ["nginx"],
        }
    )

    scope = ProbeScope.from_desired(desired, container_prefix="app")

    assert scope.packages == ("nginx",)
    assert scope.users == ("deploy",)
    assert scope.files == ("/etc/ssh/sshd_config.d/90-vpsctl.conf",)
    assert scope.services == ("nginx",)
    assert scope.container_prefix == "app"


def test_container_check_lists_prefixed_containers() -> None:
    """Only containers under the managed prefix are reported."""
    host = FakeHost()
    host.run_container("vpsctl-web", "registry.example.com/app/web@sha256:" + "a" * 64)
    host.run_container("other", "nginx:latest")
    prober, _ = _prober(host)

    probed = prober.probe([CheckKind.CONTAINERS])

    assert list(probed.value(CheckKind.CONTAINERS)) == ["vpsctl-web"]


def test_parse_check_kinds() -> None:
    """User-supplied check names are validated."""
    assert CheckKind.parse(["packages", " Firewall ", "packages"]) == (
        CheckKind.PACKAGES,
        CheckKind.FIREWALL,
    )
    with pytest.raises(ValueError, match="Unknown check kind"):
        CheckKind.parse(["kernel"])
