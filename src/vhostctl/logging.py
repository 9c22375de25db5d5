"""Structured operation logging for vhostctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
appends one JSON document per line to ``<logs_dir>/operations.jsonl``. The
record captures the command arguments, the target site, the individual steps
taken (render, check, enable, reload, augment, restore), the time spent
waiting for locks and the final result.

Logging is best effort. When the log directory cannot be created or a write
fails the logger disables itself so the operation itself still completes.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Mutable record for a single logged operation."""

    logger: StructuredLogger
    name: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None
    _start: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record an individual step taken by the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings) if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=list(errors) if errors else [message],
            backups=None,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        backups: Sequence[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON-ready log record for this operation."""
        finished = datetime.now(UTC)
        return {
            "id": self.operation_id,
            "op": self.name,
            "args": _sanitize(dict(self.args)),
            "target": _sanitize(dict(self.target)),
            "pid": os.getpid(),
            "started_at": self.started_at.isoformat(),
            "finished_at": finished.isoformat(),
            "duration_ms": int((time.monotonic() - self._start) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSON lines logger for CLI operations."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unusable."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling operations log, cannot create %s: %s", logs_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Log the operation executed inside the ``with`` block."""
        scope = OperationScope(self, name, dict(args or {}), dict(target or {}))
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                code = getattr(exc, "exit_code", None)
                scope.error(str(exc) or type(exc).__name__, rc=int(code) if code else 1)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.debug("Disabling operations log after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
