"""Run configured backup presets through ``borg create``."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .archive import build_archive_name
from .config import BackupPreset, RepositoryContext
from .connectivity import is_remote
from .providers.engine import BorgProvider


class BackupError(RuntimeError):
    """Raised when a backup preset cannot be used."""


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Outcome of a successful ``borg create``."""

    archive: str
    repository: str
    arguments: tuple[str, ...]
    stdout: str = ""


def repository_exclusion(ctx: RepositoryContext) -> str | None:
    """Return the canonical repository path when it must be excluded.

    Only absolute, existing local locators qualify; a backup whose includes
    cover the repository would otherwise archive the repository itself.
    """
    if is_remote(ctx.locator):
        return None
    path = Path(ctx.locator)
    if not path.is_absolute():
        return None
    try:
        if not path.exists():
            return None
    except OSError:
        return None
    try:
        return str(path.resolve(strict=True))
    except OSError:
        return str(path)


def effective_excludes(ctx: RepositoryContext, preset: BackupPreset) -> list[str]:
    """Return the preset excludes plus the repository exclusion, if missing."""
    excludes = list(preset.excludes)
    automatic = repository_exclusion(ctx)
    if automatic is not None and automatic not in excludes:
        excludes.append(automatic)
    return excludes


def build_create_args(
    ctx: RepositoryContext,
    preset: BackupPreset,
    archive_name: str,
) -> list[str]:
    """Return the ``borg create`` argument vector for *preset*."""
    args = ["create"]
    if preset.compression:
        args.extend(["--compression", preset.compression])
    if preset.one_file_system:
        args.append("--one-file-system")
    if preset.exclude_caches:
        args.append("--exclude-caches")
    for pattern in effective_excludes(ctx, preset):
        args.extend(["--exclude", pattern])
    args.append(ctx.archive_locator(archive_name))
    args.extend(preset.includes)
    return args


def find_preset(presets: Sequence[BackupPreset], name: str) -> BackupPreset:
    """Return the preset called *name*."""
    for preset in presets:
        if preset.name == name:
            return preset
    available = ", ".join(preset.name for preset in presets) or "(none)"
    raise BackupError(f"Backup preset '{name}' not found. Available: {available}")


class BackupOrchestrator:
    """Validate a preset, build its arguments and create the archive."""

    def __init__(self, provider: BorgProvider) -> None:
        """Run engine commands through *provider*."""
        self.provider = provider

    def run(
        self,
        ctx: RepositoryContext,
        preset: BackupPreset,
        secret: str | None = None,
        *,
        now: datetime | None = None,
    ) -> BackupResult:
        """Create one archive from *preset* in the repository of *ctx*."""
        if not preset.includes:
            raise BackupError(f"Backup '{preset.name}' has no includes configured")
        archive_name = build_archive_name(preset, ctx.name, now)
        args = build_create_args(ctx, preset, archive_name)
        result = self.provider.run(ctx, "create", args, secret, with_hint=True)
        return BackupResult(
            archive=archive_name,
            repository=ctx.name,
            arguments=tuple(args),
            stdout=result.stdout,
        )


__all__ = [
    "BackupError",
    "BackupOrchestrator",
    "BackupResult",
    "build_create_args",
    "effective_excludes",
    "find_preset",
    "repository_exclusion",
]
