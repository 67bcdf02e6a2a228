"""Structured operation log for borgnav commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which appends
one JSON record per operation to ``<logs_dir>/operations.jsonl``. A record
carries the command name, its (sanitised) arguments and target, the ordered
list of steps recorded while the command ran, and the final result block::

    {"command": "backup", "args": {...}, "target": {...},
     "started_at": "...", "finished_at": "...", "duration_ms": 12,
     "steps": [{"name": "engine.create", "status": "success", ...}],
     "result": {"status": "success", "message": "...", "rc": 0, ...}}

Logging must never break a command: when the directory cannot be created or a
write fails, the logger disables itself and later operations become no-ops.
Secrets are never passed to the logger.
"""
from __future__ import annotations

import getpass
import json
import os
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd database
        user = "unknown"
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


class OperationScope:
    """Collects steps and the outcome of a single command invocation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for the operation named *command*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor: Mapping[str, object] = _current_actor()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._start = time.perf_counter()

    def __enter__(self) -> OperationScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.result is None:
            if exc is None:
                self._set_result("success", "Operation completed.", rc=0)
            elif isinstance(exc, SystemExit):
                code = exc.code if isinstance(exc.code, int) else 1
                status = "success" if code == 0 else "error"
                self._set_result(status, "Operation exited.", rc=code)
            else:
                self._set_result(
                    "error",
                    f"Operation aborted: {exc}",
                    errors=[str(exc) or type(exc).__name__],
                    rc=1,
                )
        self._logger._write(self._record())

    # Recording helpers ---------------------------------------------
    def add_step(self, name: str, *, status: str = "info", detail: object = None) -> None:
        """Append a named step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, context=context, rc=0)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings),
            errors=list(errors),
            changed=changed,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        error_list = list(errors) if errors is not None else [message]
        self._set_result("error", message, errors=error_list, context=context, rc=rc)

    # Internal -------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "warnings": warnings or [],
            "errors": errors or [],
            "changed": changed,
            "rc": rc,
            "context": _sanitize(dict(context or {})),
        }

    def _record(self) -> dict[str, object]:
        return {
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": _sanitize(self.actor),
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSONL writer for operation records."""

    def __init__(self, log_dir: Path | None) -> None:
        """Prepare *log_dir*; disable logging when it is unusable."""
        self._log_dir = log_dir.expanduser() if log_dir is not None else None
        self._enabled = self._log_dir is not None
        self._operations_log_path = (
            self._log_dir / OPERATIONS_LOG_NAME if self._log_dir is not None else None
        )
        if self._log_dir is not None:
            try:
                self._log_dir.mkdir(parents=True, exist_ok=True)
            except OSError:
                self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return True while records are being written."""
        return self._enabled

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope recording the operation named *command*."""
        return OperationScope(self, command, args=args, target=target)

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled or self._operations_log_path is None:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
