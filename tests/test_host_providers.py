"""Tests for the package, account, file and systemd providers."""
from __future__ import annotations

import pytest
from fakes import FakeTransport

from vpsctl.providers.files import FilesProvider, content_digest
from vpsctl.providers.packages import PackagesProvider
from vpsctl.providers.systemd import SystemdError, SystemdProvider
from vpsctl.providers.users import UsersProvider
from vpsctl.transport import CommandResult


class ScriptedTransport(FakeTransport):
    """Answer commands whose argv starts with a known prefix."""

    def __init__(self, script: dict[tuple[str, ...], tuple[int, str]]) -> None:
        super().__init__("vps1")
        self.script = script

    def _dispatch(self, argv: list[str], input: str | None) -> CommandResult:
        for prefix, (returncode, stdout) in self.script.items():
            if tuple(argv[: len(prefix)]) == prefix:
                stderr = "" if returncode == 0 else "boom"
                return CommandResult(tuple(argv), returncode, stdout, stderr)
        return super()._dispatch(argv, input)


def test_installed_packages_parse_dpkg_output() -> None:
    """Only fully installed packages count; architecture suffixes are dropped."""
    transport = ScriptedTransport(
        {
            ("dpkg-query",): (
                1,
                "nginx installed\nlibc6:amd64 installed\nufw config-files\n",
            )
        }
    )

    installed = PackagesProvider(transport).installed(["ufw", "nginx", "libc6", "nginx"])

    assert installed == {"nginx", "libc6"}
    assert transport.commands[0][-3:] == ["libc6", "nginx", "ufw"]


def test_install_refreshes_index_once() -> None:
    """``apt-get update`` runs before the first install only."""
    transport = FakeTransport()
    provider = PackagesProvider(transport)

    provider.install(["nginx", "fail2ban", "nginx"])
    provider.install(["ufw"])
    provider.install([])

    assert transport.commands == [
        ["apt-get", "update", "-q"],
        ["apt-get", "install", "-y", "-q", "--no-install-recommends", "fail2ban", "nginx"],
        ["apt-get", "install", "-y", "-q", "--no-install-recommends", "ufw"],
    ]


def _users(transport: FakeTransport) -> UsersProvider:
    return UsersProvider(transport, FilesProvider(transport))


def test_user_lookup_reads_passwd_and_groups() -> None:
    """``getent`` and ``id`` output become :class:`UserInfo`."""
    transport = ScriptedTransport(
        {
            ("getent", "passwd", "deploy"): (
                0,
                "deploy:x:1001:1001::/home/deploy:/bin/bash\n",
            ),
            ("id", "-nG", "deploy"): (0, "deploy sudo docker\n"),
            ("getent", "passwd"): (2, ""),
        }
    )
    users = _users(transport)

    info = users.get("deploy")

    assert info is not None
    assert info.uid == 1001
    assert info.home == "/home/deploy"
    assert info.groups == ("deploy", "docker", "sudo")
    assert users.get("ghost") is None


def test_create_user_flags() -> None:
    """System accounts and supplementary groups map onto ``useradd`` flags."""
    transport = FakeTransport()

    _users(transport).create("svc", shell="/usr/sbin/nologin", groups=["b", "a"], system=True)

    assert transport.commands == [
        [
            "useradd",
            "--create-home",
            "--shell",
            "/usr/sbin/nologin",
            "--system",
            "--groups",
            "a,b",
            "svc",
        ]
    ]


def test_password_travels_on_stdin() -> None:
    """Passwords never appear in argv."""
    transport = FakeTransport()

    _users(transport).set_password("deploy", "hunter2")

    assert transport.commands == [["chpasswd"]]
    assert transport.inputs == ["deploy:hunter2\n"]


def test_authorized_keys_are_written_atomically() -> None:
    """Keys land in ``~/.ssh/authorized_keys`` with owner-only permissions."""
    transport = ScriptedTransport(
        {
            ("getent", "passwd", "deploy"): (
                0,
                "deploy:x:1001:1001::/home/deploy:/bin/bash\n",
            ),
            ("id",): (0, "deploy\n"),
            ("mktemp",): (0, "/home/deploy/.ssh/.authorized_keys.Ab12\n"),
        }
    )

    digest = _users(transport).set_authorized_keys("deploy", ["ssh-ed25519 AAAA ci"])

    assert digest == content_digest("ssh-ed25519 AAAA ci\n")
    assert transport.inputs == ["ssh-ed25519 AAAA ci\n"]
    assert ["chmod", "0600", "/home/deploy/.ssh/.authorized_keys.Ab12"] in transport.commands
    assert [
        "mv",
        "-f",
        "/home/deploy/.ssh/.authorized_keys.Ab12",
        "/home/deploy/.ssh/authorized_keys",
    ] in transport.commands


def test_authorized_keys_for_missing_user() -> None:
    """Keys cannot be installed for an account that does not exist."""
    transport = ScriptedTransport({("getent",): (2, "")})

    with pytest.raises(LookupError, match="ghost"):
        _users(transport).set_authorized_keys("ghost", ["ssh-ed25519 AAAA ci"])


def test_file_stat_reports_mode_owner_and_digest() -> None:
    """``stat`` and ``sha256sum`` output become :class:`FileState`."""
    transport = ScriptedTransport(
        {
            ("stat",): (0, "640 root adm\n"),
            ("sha256sum",): (0, f"{'d' * 64}  /etc/app.conf\n"),
        }
    )

    state = FilesProvider(transport).stat("/etc/app.conf")

    assert state is not None
    assert state.mode == 0o640
    assert state.to_dict() == {"sha256": "d" * 64, "mode": "0640", "owner": "root", "group": "adm"}


def test_file_stat_missing() -> None:
    """Missing files report ``None``."""
    transport = ScriptedTransport({("stat",): (1, "")})

    assert FilesProvider(transport).stat("/etc/missing.conf") is None


def test_unit_state_and_checked_reload() -> None:
    """Configuration is syntax-checked before a reload."""
    transport = ScriptedTransport(
        {
            ("systemctl", "is-enabled"): (0, "static\n"),
            ("systemctl", "is-active"): (3, "inactive\n"),
        }
    )
    systemd = SystemdProvider(transport)

    state = systemd.state("nginx")
    systemd.reload("nginx")

    assert (state.enabled, state.active) == (True, False)
    assert transport.commands[-2:] == [
        ["nginx", "-t"],
        ["systemctl", "reload-or-restart", "nginx"],
    ]


def test_systemctl_failure_raises() -> None:
    """Failed unit operations raise :class:`SystemdError` with the exit status."""
    transport = ScriptedTransport({("systemctl", "enable"): (5, "")})

    with pytest.raises(SystemdError, match="exit 5") as excinfo:
        SystemdProvider(transport).enable_now("docker")

    assert excinfo.value.returncode == 5
    assert excinfo.value.host == "vps1"
