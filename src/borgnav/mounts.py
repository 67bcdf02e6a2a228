"""Mount lifecycle for the interactive session.

A session holds at most one mounted archive. :class:`MountManager` owns that
slot: ``mount`` fills it, ``unmount`` empties it, and nothing else touches it.
Mounts left behind by a crashed or killed session are not tracked.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import RepositoryContext
from .providers.engine import BorgProvider

NO_FUSE_MARKER = "no fuse support"


class MountStateError(RuntimeError):
    """Raised when a mountpoint or the session mount slot is not usable."""


@dataclass(frozen=True, slots=True)
class MountSession:
    """The archive currently mounted by this session."""

    archive: str
    mountpoint: Path
    repository: str


def prepare_mountpoint(path: Path) -> Path:
    """Ensure *path* is an empty directory, creating it when missing.

    The check and the later mount are not atomic; mountpoints are private to
    the session by convention.
    """
    if path.exists():
        if not path.is_dir():
            raise MountStateError(f"Mountpoint {path} exists and is not a directory")
        try:
            has_entries = any(path.iterdir())
        except OSError as exc:
            raise MountStateError(f"Cannot read mountpoint {path}: {exc}") from exc
        if has_entries:
            raise MountStateError(f"Mountpoint {path} is not empty; choose an empty directory")
        return path
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise MountStateError(f"Cannot create mountpoint {path}: {exc}") from exc
    return path


def default_mountpoint(ctx: RepositoryContext, archive: str) -> Path:
    """Return ``<mount_root>/<archive>`` for *ctx*."""
    return ctx.mount_root / archive


class MountManager:
    """Owns the single mount slot of an interactive session."""

    def __init__(self, provider: BorgProvider) -> None:
        """Run engine commands through *provider*."""
        self.provider = provider
        self._active: MountSession | None = None

    @property
    def active(self) -> MountSession | None:
        """Return the mounted archive, if any."""
        return self._active

    def probe_support(self, ctx: RepositoryContext) -> bool:
        """Return False only when the engine reports missing FUSE support.

        A binary that cannot be started raises ``EngineInvocationError``.
        """
        result = self.provider.mount_help(ctx)
        combined = f"{result.stdout}\n{result.stderr}".lower()
        return NO_FUSE_MARKER not in combined

    def mount(
        self,
        ctx: RepositoryContext,
        archive: str,
        mountpoint: Path,
        secret: str | None = None,
    ) -> MountSession:
        """Mount *archive* at *mountpoint* and record the session."""
        if self._active is not None:
            raise MountStateError(
                f"Archive {self._active.archive} is still mounted at "
                f"{self._active.mountpoint}; unmount it first"
            )
        prepare_mountpoint(mountpoint)
        self.provider.mount(ctx, archive, mountpoint, secret)
        self._active = MountSession(archive=archive, mountpoint=mountpoint, repository=ctx.name)
        return self._active

    def unmount(
        self,
        ctx: RepositoryContext,
        mountpoint: Path,
        secret: str | None = None,
    ) -> None:
        """Unmount *mountpoint*; the directory itself is kept for reuse."""
        self.provider.umount(ctx, mountpoint, secret)
        if self._active is not None and self._active.mountpoint == mountpoint:
            self._active = None

    def release(self, ctx: RepositoryContext, secret: str | None = None) -> MountSession | None:
        """Unmount the active session, if any, and return what was released."""
        session = self._active
        if session is None:
            return None
        self.unmount(ctx, session.mountpoint, secret)
        return session


__all__ = [
    "MountManager",
    "MountSession",
    "MountStateError",
    "NO_FUSE_MARKER",
    "default_mountpoint",
    "prepare_mountpoint",
]
