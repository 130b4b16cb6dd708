"""Append-only rollout history stored as JSON lines per host."""
from __future__ import annotations

import json
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .registry import host_key


class RolloutLogError(RuntimeError):
    """Raised when rollout history cannot be read or written."""


@dataclass(slots=True)
class RolloutLog:
    """Manage ``rollouts/<host>.jsonl`` under the state directory.

    Records are only ever appended; each append is flushed and fsync'd before
    returning so a record survives a crash of the controller.
    """

    root: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = Path(self.root).expanduser()

    def path_for(self, host: str) -> Path:
        """Return the history file for ``host``."""
        return self.root / "rollouts" / f"{host_key(host)}.jsonl"

    def append(self, record: Mapping[str, object]) -> None:
        """Durably append ``record`` to the history of ``record['host']``."""
        host = str(record.get("host", "")).strip()
        if not host:
            raise RolloutLogError("Rollout records must name their host.")
        path = self.path_for(host)
        line = json.dumps(dict(record), sort_keys=True)
        try:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
        except OSError as exc:
            raise RolloutLogError(f"Failed to append rollout record to {path}: {exc}") from exc

    def entries(self, host: str) -> list[dict[str, object]]:
        """Return every record for ``host`` in append order."""
        path = self.path_for(host)
        if not path.exists():
            return []
        entries: list[dict[str, object]] = []
        with path.open(encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise RolloutLogError(
                        f"Rollout history corrupted ({path}, line {number}): {exc}"
                    ) from exc
                if isinstance(data, Mapping):
                    entries.append(dict(data))
        return entries


__all__ = ["RolloutLog", "RolloutLogError"]
