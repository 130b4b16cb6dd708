"""Tests for host target parsing and command transports."""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest

from vpsctl.config import SSHConfig
from vpsctl.errors import CommandError, CommandTimeout, HostUnreachable
from vpsctl.transport import LocalTransport, SshTransport, parse_target


def test_parse_local_target() -> None:
    """``local`` selects the local transport."""
    transport = parse_target("local")

    assert isinstance(transport, LocalTransport)
    assert transport.host == "local"


@pytest.mark.parametrize(
    ("target", "user", "host", "port"),
    [
        ("vps1.example.com", "root", "vps1.example.com", 22),
        ("deploy@vps1.example.com", "deploy", "vps1.example.com", 22),
        ("deploy@vps1.example.com:2222", "deploy", "vps1.example.com", 2222),
        ("[2001:db8::1]:2200", "root", "2001:db8::1", 2200),
        ("2001:db8::1", "root", "2001:db8::1", 22),
    ],
)
def test_parse_ssh_targets(target: str, user: str, host: str, port: int) -> None:
    """User, host and port are taken from the target string."""
    transport = parse_target(target)

    assert isinstance(transport, SshTransport)
    assert (transport.user, transport.host, transport.port) == (user, host, port)


def test_parse_target_uses_config_defaults() -> None:
    """Unspecified parts fall back to the ssh configuration."""
    config = SSHConfig(user="ops", port=2022, identity_file=Path("/keys/ci"))

    transport = parse_target("vps1", config)

    assert isinstance(transport, SshTransport)
    assert transport.user == "ops"
    assert transport.port == 2022
    assert transport.identity_file == Path("/keys/ci")


@pytest.mark.parametrize("target", ["", "vps1:ssh", "vps1:70000", "deploy@:22"])
def test_parse_target_rejects_invalid(target: str) -> None:
    """Malformed targets raise ``ValueError``."""
    with pytest.raises(ValueError):
        parse_target(target)


def test_ssh_command_shape() -> None:
    """The ssh argv runs in batch mode with the configured options."""
    transport = SshTransport(
        host="vps1",
        user="deploy",
        port=2222,
        identity_file=Path("/keys/ci"),
        options=("StrictHostKeyChecking=accept-new",),
    )

    command = transport.ssh_command("true")

    assert command[:5] == ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]
    assert command[5:7] == ["-p", "2222"]
    assert ["-i", "/keys/ci"] == command[7:9]
    assert command[-3:] == ["deploy@vps1", "--", "true"]


def test_ssh_connection_failure_is_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    """Exit status 255 from ssh is reported as an unreachable host."""

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args[0], 255, "", "Connection refused")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(HostUnreachable, match="Connection refused"):
        SshTransport(host="vps1").run(["true"])


def test_ssh_quotes_remote_command_and_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remote arguments are shell-quoted and env is prefixed with ``env``."""
    calls: list[list[str]] = []

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        calls.append(args[0])
        return subprocess.CompletedProcess(args[0], 0, "ok\n", "")

    monkeypatch.setattr(subprocess, "run", fake_run)

    result = SshTransport(host="vps1").run(
        ["apt-get", "install", "my package"], env={"DEBIAN_FRONTEND": "noninteractive"}
    )

    assert result.ok
    assert result.stdout == "ok\n"
    assert calls[0][-1] == "env DEBIAN_FRONTEND=noninteractive apt-get install 'my package'"


def test_ssh_timeout_is_command_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    """Expired subprocess timeouts become :class:`CommandTimeout`."""

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(args[0], kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandTimeout):
        SshTransport(host="vps1").run(["sleep", "999"], timeout=1)


def test_local_transport_reports_failures() -> None:
    """Non-zero exits raise :class:`CommandError` unless ``check`` is off."""
    transport = LocalTransport()

    with pytest.raises(CommandError) as excinfo:
        transport.run(["sh", "-c", "echo nope >&2; exit 3"])
    assert excinfo.value.returncode == 3
    assert "nope" in str(excinfo.value)

    result = transport.run(["sh", "-c", "exit 3"], check=False)
    assert result.returncode == 3


def test_local_transport_passes_stdin() -> None:
    """Input is delivered on stdin."""
    result = LocalTransport().run(["cat"], input="secret-free payload")

    assert result.stdout == "secret-free payload"


def test_missing_binary_is_exit_127() -> None:
    """A missing executable behaves like a shell's command-not-found."""
    result = LocalTransport().run(["vpsctl-no-such-binary"], check=False)

    assert result.returncode == 127
