"""Mutual exclusion for provisioning runs and rollouts.

Two layers are provided:

* :class:`LockManager` serialises work on the controlling machine with
  ``fcntl`` file locks under ``runtime_dir``. Each lock file carries JSON
  metadata (pid, path, acquisition time) for diagnostics.
* :class:`HostMarker` guards the target host itself with an atomic ``mkdir``
  so that two controllers never provision the same host at once.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import shlex
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import CommandError, ConcurrencyConflict

if TYPE_CHECKING:
    from .transport import Transport

_LOG = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(ConcurrencyConflict):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


def _lock_name(value: str) -> str:
    cleaned = _UNSAFE_NAME.sub("_", value).strip("._")
    return cleaned or "default"


class LockManager:
    """Issue per-host provisioning and rollout locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock root and the default wait budget."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, kind: str, host: str) -> Path:
        """Return the lock file path used for ``kind`` locks on ``host``."""
        return self.runtime_dir / kind / f"{_lock_name(host)}.lock"

    @contextmanager
    def provision_lock(self, host: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the provisioning lock for ``host``."""
        with self._acquire(self.lock_path("provision", host), timeout, host=host) as handle:
            yield handle

    @contextmanager
    def rollout_lock(self, host: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the rollout lock for ``host``."""
        with self._acquire(self.lock_path("rollout", host), timeout, host=host) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None, *, host: str) -> Iterator[LockHandle]:
        budget = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        handle = path.open("a+", encoding="utf-8")
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= budget:
                        holder = _read_metadata(path)
                        raise LockTimeoutError(
                            f"Timed out after {budget:.1f}s waiting for {path} "
                            f"(held by pid {holder.get('pid', 'unknown')}).",
                            host=host,
                            resource=str(path),
                        ) from None
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - started) * 1000)
            handle.seek(0)
            handle.truncate()
            json.dump(
                {
                    "pid": os.getpid(),
                    "path": str(path),
                    "acquired_at": datetime.now(UTC).isoformat(),
                },
                handle,
            )
            handle.flush()
            _LOG.debug("Acquired %s after %d ms", path, wait_ms)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                _LOG.debug("Released %s", path)
        finally:
            handle.close()


def _read_metadata(path: Path) -> dict[str, object]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


class HostMarker:
    """Host-side provisioning marker created with an atomic ``mkdir``."""

    def __init__(self, transport: Transport, marker_path: Path, *, owner: str) -> None:
        """Bind the marker to a host transport and an owner description."""
        self.transport = transport
        self.marker_path = Path(marker_path)
        self.owner = owner

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Create the marker for the duration of the block."""
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def acquire(self) -> None:
        """Create the marker, raising :class:`ConcurrencyConflict` if it exists."""
        try:
            self.transport.run(["mkdir", str(self.marker_path)])
        except CommandError as exc:
            holder = self.transport.run(
                ["cat", str(self.marker_path / "owner")], check=False
            ).stdout.strip()
            raise ConcurrencyConflict(
                f"Another provisioning run holds {self.marker_path}"
                + (f" ({holder})" if holder else ""),
                host=self.transport.host,
                resource=str(self.marker_path),
            ) from exc
        owner_path = shlex.quote(str(self.marker_path / "owner"))
        self.transport.run(["sh", "-c", f"cat > {owner_path}"], input=self.owner + "\n")

    def release(self) -> None:
        """Remove the marker directory."""
        self.transport.run(["rm", "-rf", str(self.marker_path)], check=False)


__all__ = ["HostMarker", "LockHandle", "LockManager", "LockTimeoutError"]
