"""Structured operation and audit logging for vpsctl.

Every CLI invocation is recorded as one JSON line in ``operations.jsonl``; each
secret resolution is recorded in ``audit.jsonl``. The logger never breaks a
command: if the log directory cannot be created or a write fails it disables
itself and emits a diagnostic through the standard ``logging`` module instead.

Secret values registered through :meth:`StructuredLogger.register_secret` are
replaced with ``***`` in every record written.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_LOG = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
AUDIT_LOG_NAME = "audit.jsonl"
REDACTED = "***"


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def _sanitize(value: object) -> object:
    """Convert ``value`` into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects the outcome of one operation before it is flushed to disk."""

    logger: StructuredLogger
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=_timestamp)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, step_id: str, *, status: str, detail: object | None = None) -> None:
        """Record an intermediate step of the operation."""
        entry: dict[str, object] = {"id": step_id, "status": status, "at": _timestamp()}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self.steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            changed=None,
            warnings=warnings,
            errors=list(errors) if errors else [message],
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int | None,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message, "rc": rc}
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Append-only JSONL writer for operations and audit events."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare ``log_dir``; disable logging when it cannot be created."""
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._audit_log_path = self.log_dir / AUDIT_LOG_NAME
        self._secrets: set[str] = set()
        self._lock = threading.Lock()
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _LOG.warning("Structured logging disabled; cannot create %s: %s", self.log_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are still being written."""
        return self._enabled

    def register_secret(self, value: str) -> None:
        """Redact ``value`` from every record written from now on."""
        if value:
            with self._lock:
                self._secrets.add(value)

    def redact(self, text: str) -> str:
        """Return ``text`` with every registered secret replaced."""
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, REDACTED)
        return text

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and write it when the block exits."""
        scope = OperationScope(
            logger=self,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled exception: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(
                self._operations_log_path,
                {
                    "op_id": scope.operation_id,
                    "command": scope.command,
                    "started_at": scope.started_at,
                    "finished_at": _timestamp(),
                    "duration_ms": duration_ms,
                    "args": _sanitize(scope.args),
                    "target": _sanitize(scope.target),
                    "steps": scope.steps,
                    "result": scope.result,
                },
            )

    def audit(self, event: str, **fields: object) -> None:
        """Append an audit event; callers must never pass secret values."""
        record = {"event": event, "timestamp": _timestamp()}
        record.update({key: _sanitize(value) for key, value in fields.items()})
        self._write(self._audit_log_path, record)

    def _write(self, path: Path, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = self.redact(json.dumps(record, sort_keys=True))
        try:
            with self._lock, path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            _LOG.warning("Structured logging disabled after write failure on %s: %s", path, exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "REDACTED"]
