"""Command transport to the managed host.

Every provider talks to the host through a :class:`Transport`: either the local
machine (``LocalTransport``) or a remote VPS reached through the ``ssh`` binary
(``SshTransport``). Secret material is only ever passed on stdin via
``input=``; argv is visible in process listings and is logged on failure.
"""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import SSHConfig
from .errors import CommandError, CommandTimeout, HostUnreachable

_LOG = logging.getLogger(__name__)

SSH_CONNECTION_ERROR = 255
LOCAL_TARGET = "local"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a command executed on the host."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited successfully."""
        return self.returncode == 0


class Transport(Protocol):
    """Narrow interface used by providers to execute commands on a host."""

    host: str

    def run(
        self,
        args: Sequence[str],
        *,
        input: str | None = None,  # noqa: A002 - mirrors subprocess.run
        timeout: float | None = None,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Execute ``args`` and return its result."""
        ...


def _failure(host: str, args: Sequence[str], result: CommandResult) -> CommandError:
    message = (result.stderr or result.stdout or "no output").strip()
    return CommandError(
        f"{shlex.join(args)} failed (exit {result.returncode}): {message}",
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
        host=host,
    )


@dataclass(slots=True)
class LocalTransport:
    """Run commands on the controlling machine."""

    host: str = LOCAL_TARGET
    command_timeout: float = 300.0

    def run(
        self,
        args: Sequence[str],
        *,
        input: str | None = None,  # noqa: A002
        timeout: float | None = None,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Execute ``args`` locally."""
        command = [str(arg) for arg in args]
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                input=input,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout or self.command_timeout,
                env=merged_env,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(
                f"{shlex.join(command)} timed out after {exc.timeout}s",
                host=self.host,
            ) from exc
        except FileNotFoundError as exc:
            completed = subprocess.CompletedProcess(command, 127, "", str(exc))
        result = CommandResult(
            args=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not result.ok:
            raise _failure(self.host, command, result)
        return result


@dataclass(slots=True)
class SshTransport:
    """Run commands on a remote host through the ``ssh`` binary."""

    host: str
    user: str = "root"
    port: int = 22
    identity_file: Path | None = None
    ssh_bin: str = "ssh"
    connect_timeout: float = 10.0
    command_timeout: float = 300.0
    options: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(
        cls,
        host: str,
        config: SSHConfig,
        *,
        user: str | None = None,
        port: int | None = None,
    ) -> SshTransport:
        """Build a transport for ``host`` using the ``ssh`` configuration section."""
        return cls(
            host=host,
            user=user or config.user,
            port=port or config.port,
            identity_file=config.identity_file,
            ssh_bin=config.ssh_bin,
            connect_timeout=config.connect_timeout,
            command_timeout=config.command_timeout,
            options=config.options,
        )

    def ssh_command(self, remote: str) -> list[str]:
        """Return the full ``ssh`` argv used to run ``remote``."""
        command = [
            self.ssh_bin,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={int(self.connect_timeout)}",
            "-p",
            str(self.port),
        ]
        if self.identity_file is not None:
            command.extend(["-i", str(self.identity_file)])
        for option in self.options:
            command.extend(["-o", option])
        command.extend([f"{self.user}@{self.host}", "--", remote])
        return command

    def run(
        self,
        args: Sequence[str],
        *,
        input: str | None = None,  # noqa: A002
        timeout: float | None = None,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Execute ``args`` on the remote host."""
        remote_args = [str(arg) for arg in args]
        if env:
            remote_args = ["env", *(f"{key}={value}" for key, value in env.items()), *remote_args]
        remote = shlex.join(remote_args)
        budget = timeout or self.command_timeout
        try:
            completed = subprocess.run(  # noqa: S603
                self.ssh_command(remote),
                input=input,
                capture_output=True,
                text=True,
                check=False,
                timeout=budget + self.connect_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(
                f"{remote} timed out after {budget}s",
                host=self.host,
            ) from exc
        except FileNotFoundError as exc:
            raise HostUnreachable(
                f"ssh binary {self.ssh_bin!r} not found",
                host=self.host,
            ) from exc

        if completed.returncode == SSH_CONNECTION_ERROR:
            detail = (completed.stderr or "").strip() or "connection failed"
            _LOG.debug("ssh to %s failed: %s", self.host, detail)
            raise HostUnreachable(f"Cannot reach {self.host}: {detail}", host=self.host)

        result = CommandResult(
            args=tuple(remote_args),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not result.ok:
            raise _failure(self.host, remote_args, result)
        return result


def parse_target(target: str, config: SSHConfig | None = None) -> Transport:
    """Return a transport for ``user@host:port``, ``host`` or ``local``."""
    ssh_config = config or SSHConfig()
    value = target.strip()
    if not value:
        raise ValueError("Host target must not be empty.")
    if value == LOCAL_TARGET:
        return LocalTransport(command_timeout=ssh_config.command_timeout)

    user: str | None = None
    port: int | None = None
    if "@" in value:
        user, value = value.split("@", 1)
    if value.startswith("[") and "]" in value:
        host, _, rest = value[1:].partition("]")
        if rest.startswith(":"):
            port = _parse_port(rest[1:], target)
    elif value.count(":") == 1:
        host, _, raw_port = value.partition(":")
        port = _parse_port(raw_port, target)
    else:
        host = value
    if not host:
        raise ValueError(f"Host target {target!r} has no host name.")
    return SshTransport.from_config(host, ssh_config, user=user or None, port=port)


def _parse_port(raw: str, target: str) -> int:
    try:
        port = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid port in host target {target!r}.") from exc
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in host target {target!r}.")
    return port


__all__ = [
    "CommandResult",
    "LOCAL_TARGET",
    "LocalTransport",
    "SshTransport",
    "Transport",
    "parse_target",
]
