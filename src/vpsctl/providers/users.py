"""Local account management (getent, useradd, usermod, chpasswd)."""
from __future__ import annotations

import posixpath
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ..transport import Transport
from .files import FilesProvider, content_digest


@dataclass(frozen=True, slots=True)
class UserInfo:
    """Observed account details."""

    name: str
    uid: int
    home: str
    shell: str
    groups: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "uid": self.uid,
            "home": self.home,
            "shell": self.shell,
            "groups": list(self.groups),
        }


def render_authorized_keys(keys: Sequence[str]) -> str:
    """Return the ``authorized_keys`` content for ``keys``."""
    return "".join(f"{key}\n" for key in keys)


@dataclass(slots=True)
class UsersProvider:
    """Inspect and mutate accounts on the host."""

    transport: Transport
    files: FilesProvider

    def get(self, name: str) -> UserInfo | None:
        """Return account details for ``name`` or ``None`` when absent."""
        entry = self.transport.run(["getent", "passwd", name], check=False)
        if not entry.ok or not entry.stdout.strip():
            return None
        fields = entry.stdout.strip().split(":")
        groups = self.transport.run(["id", "-nG", name]).stdout.split()
        return UserInfo(
            name=fields[0],
            uid=int(fields[2]),
            home=fields[5],
            shell=fields[6],
            groups=tuple(sorted(groups)),
        )

    def create(
        self,
        name: str,
        *,
        shell: str,
        groups: Iterable[str] = (),
        system: bool = False,
    ) -> None:
        """Create ``name`` with a home directory."""
        args = ["useradd", "--create-home", "--shell", shell]
        if system:
            args.append("--system")
        group_list = sorted(set(groups))
        if group_list:
            args.extend(["--groups", ",".join(group_list)])
        args.append(name)
        self.transport.run(args)

    def add_groups(self, name: str, groups: Iterable[str]) -> None:
        """Append ``groups`` to the supplementary groups of ``name``."""
        group_list = sorted(set(groups))
        if group_list:
            self.transport.run(["usermod", "-aG", ",".join(group_list), name])

    def authorized_keys_digest(self, name: str) -> str | None:
        """Return the sha256 of the user's ``authorized_keys`` or ``None``."""
        info = self.get(name)
        if info is None:
            return None
        state = self.files.stat(self._authorized_keys_path(info))
        return state.sha256 if state else None

    def set_authorized_keys(self, name: str, keys: Sequence[str]) -> str:
        """Replace the user's ``authorized_keys``; return the written digest."""
        info = self.get(name)
        if info is None:
            raise LookupError(f"User {name} does not exist")
        content = render_authorized_keys(keys)
        ssh_dir = posixpath.join(info.home, ".ssh")
        self.transport.run(["install", "-d", "-m", "0700", "-o", name, "-g", name, ssh_dir])
        self.files.write(
            self._authorized_keys_path(info), content, mode=0o600, owner=name, group=name
        )
        return content_digest(content)

    def set_password(self, name: str, password: str) -> None:
        """Set the password of ``name``; the value is sent on stdin only."""
        self.transport.run(["chpasswd"], input=f"{name}:{password}\n")

    @staticmethod
    def _authorized_keys_path(info: UserInfo) -> str:
        return posixpath.join(info.home, ".ssh", "authorized_keys")


__all__ = ["UserInfo", "UsersProvider", "render_authorized_keys"]
