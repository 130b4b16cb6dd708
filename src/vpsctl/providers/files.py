"""File inspection and atomic writes on the managed host."""
from __future__ import annotations

import hashlib
import posixpath
import shlex
from dataclasses import dataclass

from ..transport import Transport


@dataclass(frozen=True, slots=True)
class FileState:
    """Observed metadata of a file on the host."""

    path: str
    sha256: str
    mode: int
    owner: str
    group: str

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "sha256": self.sha256,
            "mode": f"{self.mode:04o}",
            "owner": self.owner,
            "group": self.group,
        }


@dataclass(slots=True)
class FilesProvider:
    """Read and write files through a transport."""

    transport: Transport

    def stat(self, path: str) -> FileState | None:
        """Return the state of ``path`` or ``None`` when it does not exist."""
        meta = self.transport.run(["stat", "-L", "-c", "%a %U %G", path], check=False)
        if not meta.ok:
            return None
        mode_text, owner, group = meta.stdout.split()
        digest = self.transport.run(["sha256sum", path]).stdout.split()[0]
        return FileState(
            path=path,
            sha256=digest,
            mode=int(mode_text, 8),
            owner=owner,
            group=group,
        )

    def read(self, path: str) -> str | None:
        """Return the text of ``path`` or ``None`` when it is missing."""
        result = self.transport.run(["cat", path], check=False)
        if not result.ok:
            return None
        return result.stdout

    def write(
        self,
        path: str,
        content: str,
        *,
        mode: int = 0o644,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Atomically replace ``path`` with ``content``.

        The content travels on stdin into a temporary file in the same
        directory, which is then renamed over the destination.
        """
        directory = posixpath.dirname(path) or "/"
        self.transport.run(["mkdir", "-p", directory])
        tmp_path = self.transport.run(
            ["mktemp", posixpath.join(directory, f".{posixpath.basename(path)}.XXXXXX")]
        ).stdout.strip()
        try:
            self.transport.run(["sh", "-c", f"cat > {shlex.quote(tmp_path)}"], input=content)
            self.transport.run(["chmod", f"{mode:04o}", tmp_path])
            if owner is not None or group is not None:
                self.transport.run(["chown", f"{owner or ''}:{group or ''}", tmp_path])
            self.transport.run(["mv", "-f", tmp_path, path])
        finally:
            self.transport.run(["rm", "-f", tmp_path], check=False)

    def move(self, source: str, destination: str) -> None:
        """Rename ``source`` over ``destination``."""
        self.transport.run(["mv", "-f", source, destination])

    def link(self, source: str, link_path: str) -> None:
        """Point the symlink ``link_path`` at ``source``."""
        self.transport.run(["mkdir", "-p", posixpath.dirname(link_path) or "/"])
        self.transport.run(["ln", "-sfn", source, link_path])

    def remove(self, path: str) -> None:
        """Delete ``path`` if present."""
        self.transport.run(["rm", "-f", path])


def content_digest(content: str) -> str:
    """Return the sha256 digest ``sha256sum`` reports for ``content``."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


__all__ = ["FileState", "FilesProvider", "content_digest"]
