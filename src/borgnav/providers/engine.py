"""Subprocess bridge to the Borg archive engine."""
from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..config import RepositoryContext
    from ..logging import OperationScope

PASSPHRASE_ENV_VAR = "BORG_PASSPHRASE"
PASSCOMMAND_ENV_VAR = "BORG_PASSCOMMAND"
PERMISSION_HINT = "run with sudo for system paths"


class EngineError(RuntimeError):
    """Base class for failures talking to the archive engine."""


class EngineInvocationError(EngineError):
    """Raised when the engine binary cannot be spawned at all."""


class OperationFailedError(EngineError):
    """Raised when an engine action exits with a non-zero status."""

    def __init__(self, action: str, status: int, stderr: str, hint: str | None = None) -> None:
        """Store the failing action, its exit status and trimmed diagnostics."""
        self.action = action
        self.status = status
        self.stderr = stderr.strip()
        self.hint = hint
        message = f"borg {action} failed with status {status}: {self.stderr or 'no output'}"
        if hint:
            message = f"{message} (hint: {hint})"
        super().__init__(message)


class MalformedEngineOutputError(EngineError):
    """Raised when engine output cannot be parsed into structured data."""


@dataclass(frozen=True, slots=True)
class RunResult:
    """Exit status and captured streams of one engine invocation."""

    args: tuple[str, ...]
    status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Return True when the process exited with status zero."""
        return self.status == 0


@dataclass(frozen=True, slots=True)
class Archive:
    """An archive entry from ``borg list --json``."""

    name: str
    time: str | None = None


@dataclass(frozen=True, slots=True)
class ArchiveItem:
    """A file entry from ``borg list --json-lines``."""

    path: str
    type: str | None = None
    size: int | None = None


def permission_hint(stderr: str) -> str | None:
    """Return a retry hint when *stderr* reports a permission problem."""
    if "permission denied" in stderr.lower():
        return PERMISSION_HINT
    return None


def ensure_success(action: str, result: RunResult, *, hint: str | None = None) -> RunResult:
    """Return *result* or raise :class:`OperationFailedError`."""
    if result.ok:
        return result
    raise OperationFailedError(action, result.status, result.stderr, hint)


class EngineRunner:
    """Spawn engine processes and capture their output.

    A non-zero exit is returned to the caller; only a failure to start the
    process raises. The passphrase travels in the environment, never in the
    argument vector.
    """

    def __init__(self, base_env: Mapping[str, str] | None = None) -> None:
        """Use *base_env* (default: the process environment) for children."""
        self._base_env = dict(os.environ if base_env is None else base_env)

    def invoke(
        self,
        engine_path: str,
        args: Sequence[str],
        secret: str | None = None,
        cwd: Path | None = None,
    ) -> RunResult:
        """Run ``engine_path *args`` and return its :class:`RunResult`."""
        env = dict(self._base_env)
        if secret is not None:
            env[PASSPHRASE_ENV_VAR] = secret
        command = [engine_path, *args]
        try:
            completed = subprocess.run(  # noqa: S603 - engine path comes from config
                command,
                capture_output=True,
                text=True,
                errors="replace",
                env=env,
                cwd=str(cwd) if cwd is not None else None,
                stdin=subprocess.DEVNULL,
                check=False,
            )
        except OSError as exc:
            raise EngineInvocationError(f"Failed to invoke {engine_path} binary: {exc}") from exc
        return RunResult(
            args=tuple(args),
            status=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


class BorgProvider:
    """Engine operations for a repository context."""

    def __init__(
        self,
        runner: EngineRunner | None = None,
        op: OperationScope | None = None,
    ) -> None:
        """Bind the provider to *runner*; record invocations on *op*."""
        self.runner = runner or EngineRunner()
        self.op = op

    def run(
        self,
        ctx: RepositoryContext,
        action: str,
        args: Sequence[str],
        secret: str | None = None,
        *,
        cwd: Path | None = None,
        check: bool = True,
        with_hint: bool = False,
    ) -> RunResult:
        """Invoke the engine for *ctx* and record the outcome as a step."""
        result = self.runner.invoke(ctx.engine_path, args, secret, cwd)
        if self.op is not None:
            detail: dict[str, object] = {"repository": ctx.name, "status": result.status}
            if not result.ok:
                detail["stderr"] = result.stderr.strip()
            self.op.add_step(
                f"engine.{action}",
                status="success" if result.ok else "error",
                detail=detail,
            )
        if not check:
            return result
        hint = permission_hint(result.stderr) if with_hint else None
        return ensure_success(action, result, hint=hint)

    def list_archives(self, ctx: RepositoryContext, secret: str | None = None) -> list[Archive]:
        """Return the archives stored in the repository."""
        result = self.run(ctx, "list", ["list", "--json", ctx.locator], secret)
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise MalformedEngineOutputError(f"Failed to parse borg JSON output: {exc}") from exc
        if not isinstance(payload, Mapping) or not isinstance(payload.get("archives"), list):
            raise MalformedEngineOutputError(
                "Failed to parse borg JSON output: missing 'archives' list."
            )
        archives: list[Archive] = []
        for index, entry in enumerate(payload["archives"]):
            if not isinstance(entry, Mapping) or not isinstance(entry.get("archive"), str):
                raise MalformedEngineOutputError(
                    f"Failed to parse borg JSON output: archive #{index + 1} has no name."
                )
            time_value = entry.get("time")
            archives.append(
                Archive(
                    name=entry["archive"],
                    time=time_value if isinstance(time_value, str) else None,
                )
            )
        return archives

    def list_items(
        self,
        ctx: RepositoryContext,
        archive: str,
        secret: str | None = None,
    ) -> list[ArchiveItem]:
        """Return the items stored in *archive*."""
        result = self.run(
            ctx,
            "list items",
            ["list", "--json-lines", ctx.archive_locator(archive)],
            secret,
        )
        items: list[ArchiveItem] = []
        for number, line in enumerate(result.stdout.splitlines(), start=1):
            trimmed = line.strip()
            if not trimmed:
                continue
            try:
                entry = json.loads(trimmed)
            except json.JSONDecodeError as exc:
                raise MalformedEngineOutputError(
                    f"Failed to parse JSON line {number} from borg output: {exc}"
                ) from exc
            if not isinstance(entry, Mapping) or not isinstance(entry.get("path"), str):
                raise MalformedEngineOutputError(
                    f"Failed to parse JSON line {number} from borg output: missing 'path'."
                )
            item_type = entry.get("type")
            size = entry.get("size")
            items.append(
                ArchiveItem(
                    path=entry["path"],
                    type=item_type if isinstance(item_type, str) else None,
                    size=size if isinstance(size, int) and not isinstance(size, bool) else None,
                )
            )
        return items

    def extract(
        self,
        ctx: RepositoryContext,
        archive: str,
        path_in_archive: str,
        destination: Path,
        secret: str | None = None,
    ) -> Path:
        """Extract one entry of *archive* into *destination*."""
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OperationFailedError(
                "extract", -1, f"cannot create destination {destination}: {exc}"
            ) from exc
        args = ["extract"]
        # Strip leading components so only the selected entry is written.
        strip = max(len(Path(path_in_archive).parts) - 1, 0)
        if strip:
            args.extend(["--strip-components", str(strip)])
        args.extend([ctx.archive_locator(archive), path_in_archive])
        self.run(ctx, "extract", args, secret, cwd=destination, with_hint=True)
        return destination

    def init(self, ctx: RepositoryContext, encryption: str, secret: str | None = None) -> None:
        """Initialise a new repository at the context locator."""
        self.run(ctx, "init", ["init", "--encryption", encryption, ctx.locator], secret)

    def mount(
        self,
        ctx: RepositoryContext,
        archive: str,
        mountpoint: Path,
        secret: str | None = None,
    ) -> None:
        """Expose *archive* read-only at *mountpoint*."""
        self.run(
            ctx,
            "mount",
            ["mount", ctx.archive_locator(archive), str(mountpoint)],
            secret,
            with_hint=True,
        )

    def umount(self, ctx: RepositoryContext, mountpoint: Path, secret: str | None = None) -> None:
        """Unmount the archive mounted at *mountpoint*."""
        self.run(ctx, "umount", ["umount", str(mountpoint)], secret, with_hint=True)

    def mount_help(self, ctx: RepositoryContext) -> RunResult:
        """Return the raw output of ``borg mount --help``."""
        return self.run(ctx, "mount --help", ["mount", "--help"], None, check=False)


__all__ = [
    "Archive",
    "ArchiveItem",
    "BorgProvider",
    "EngineError",
    "EngineInvocationError",
    "EngineRunner",
    "MalformedEngineOutputError",
    "OperationFailedError",
    "PASSCOMMAND_ENV_VAR",
    "PASSPHRASE_ENV_VAR",
    "PERMISSION_HINT",
    "RunResult",
    "ensure_success",
    "permission_hint",
]
