"""Interactive navigation between repository, archive and backup screens.

Every screen is a frozen dataclass carrying only the data it needs (the
archive list fetched on entry, the items of an archive being browsed, ...).
:meth:`Navigator.step` is the single transition function: it renders the
screen for a state, asks the operator, performs at most one engine action and
returns the next state. :meth:`Navigator.run` loops until :class:`Quit` or
:class:`ChangeRepo`; :func:`run_interactive` wraps that loop with repository
selection and the mount cleanup on exit.

Recoverable failures (a failed engine action, an unusable mountpoint, a bad
preset) are shown to the operator and move the machine to the parent screen.
Anything else propagates to the caller.
"""
from __future__ import annotations

import os
import socket
from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Union, cast

from .backups import BackupError, BackupOrchestrator, find_preset
from .config import (
    AppConfig,
    CommandKind,
    RepositoryContext,
    pick_repository,
    resolve_repositories,
)
from .connectivity import attention_message, probe
from .credentials import PassphraseCache
from .logging import OperationScope
from .mounts import MountManager, MountStateError, default_mountpoint
from .prompts import Prompter, SelectionAbandoned
from .providers.engine import (
    Archive,
    ArchiveItem,
    BorgProvider,
    EngineInvocationError,
    OperationFailedError,
)
from .wizards import add_preset, add_repository

BusyIndicator = Callable[[str], AbstractContextManager[object]]


# Screens -------------------------------------------------------------------


@dataclass(frozen=True)
class MainMenu:
    """Top-level menu of a selected repository."""


@dataclass(frozen=True)
class ArchiveList:
    """Archives of the repository; ``None`` until fetched."""

    archives: tuple[Archive, ...] | None = None


@dataclass(frozen=True)
class ArchiveAction:
    archive: str
    archives: tuple[Archive, ...]


@dataclass(frozen=True)
class BrowseFiles:
    """Items of *archive*; ``None`` until fetched."""

    archive: str
    archives: tuple[Archive, ...]
    items: tuple[ArchiveItem, ...] | None = None


@dataclass(frozen=True)
class MountPrompt:
    archive: str
    archives: tuple[Archive, ...]


@dataclass(frozen=True)
class UnmountCurrent:
    archive: str
    archives: tuple[Archive, ...]


@dataclass(frozen=True)
class BackupList:
    """Backup presets of the repository."""


@dataclass(frozen=True)
class BackupRun:
    preset: str


@dataclass(frozen=True)
class AddPreset:
    """Run the add-preset wizard for the current repository."""


@dataclass(frozen=True)
class AddRepository:
    """Run the add-repository wizard from the repository chooser."""


@dataclass(frozen=True)
class Quit:
    """Leave the interactive session."""


@dataclass(frozen=True)
class ChangeRepo:
    """Return to the repository chooser."""


Screen = Union[
    MainMenu,
    ArchiveList,
    ArchiveAction,
    BrowseFiles,
    MountPrompt,
    UnmountCurrent,
    BackupList,
    BackupRun,
    AddPreset,
    Quit,
    ChangeRepo,
]

TERMINAL_STATES = (Quit, ChangeRepo)
RECOVERABLE_ERRORS = (OperationFailedError, MountStateError, BackupError)


def parent_of(state: Screen) -> Screen:
    """Return the screen one level above *state*."""
    if isinstance(state, (ArchiveAction, BrowseFiles)):
        return ArchiveList(state.archives)
    if isinstance(state, (MountPrompt, UnmountCurrent)):
        return ArchiveAction(state.archive, state.archives)
    if isinstance(state, (BackupRun, AddPreset)):
        return BackupList()
    if isinstance(state, (ArchiveList, BackupList)):
        return MainMenu()
    if isinstance(state, MainMenu):
        return ChangeRepo()
    return state


def current_host(env: Mapping[str, str] | None = None) -> str:
    """Return ``$HOSTNAME`` or the system host name."""
    source = os.environ if env is None else env
    return source.get("HOSTNAME") or socket.gethostname()


def format_size(size: int | None) -> str:
    if size is None:
        return ""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"  # pragma: no cover - loop always returns


def _archive_label(archive: Archive) -> str:
    return f"{archive.name}  ({archive.time})" if archive.time else archive.name


def _item_label(item: ArchiveItem) -> str:
    if item.type == "d":
        return f"{item.path}/"
    size = format_size(item.size)
    return f"{item.path}  {size}" if size else item.path


class Navigator:
    """State machine for one selected repository."""

    def __init__(
        self,
        ctx: RepositoryContext,
        *,
        config: AppConfig,
        provider: BorgProvider,
        prompter: Prompter,
        passphrases: PassphraseCache,
        mounts: MountManager,
        mount_available: bool,
        op: OperationScope | None = None,
        busy: BusyIndicator | None = None,
        host: str | None = None,
    ) -> None:
        """Bind the navigator to *ctx* and the session collaborators."""
        self.ctx = ctx
        self.config = config
        self.provider = provider
        self.prompter = prompter
        self.passphrases = passphrases
        self.mounts = mounts
        self.mount_available = mount_available
        self.op = op
        self.busy: BusyIndicator = busy or (lambda _message: nullcontext())
        self.host = host or current_host()
        self.backups = BackupOrchestrator(provider)
        self._handlers: dict[type, Callable[[Any], Screen]] = {
            MainMenu: self._main_menu,
            ArchiveList: self._archive_list,
            ArchiveAction: self._archive_action,
            BrowseFiles: self._browse_files,
            MountPrompt: self._mount_prompt,
            UnmountCurrent: self._unmount_current,
            BackupList: self._backup_list,
            BackupRun: self._backup_run,
            AddPreset: self._add_preset,
        }

    # Driving ---------------------------------------------------------------
    def step(self, state: Screen) -> Screen:
        """Handle *state* and return the next screen."""
        if isinstance(state, TERMINAL_STATES):
            return state
        handler = cast(Callable[[Screen], Screen], self._handlers[type(state)])
        try:
            return handler(state)
        except SelectionAbandoned:
            return parent_of(state)
        except RECOVERABLE_ERRORS as exc:
            self._record(
                "navigator.error",
                status="error",
                detail={"screen": type(state).__name__, "error": str(exc)},
            )
            self.prompter.message(str(exc), style="red")
            self.prompter.pause()
            return parent_of(state)

    def run(self, start: Screen | None = None) -> Quit | ChangeRepo:
        """Loop from *start* (the main menu by default) until a terminal state."""
        state: Screen = start or MainMenu()
        while not isinstance(state, TERMINAL_STATES):
            next_state = self.step(state)
            if type(next_state) is not type(state):
                self._record(
                    "navigator.transition",
                    detail={"from": type(state).__name__, "to": type(next_state).__name__},
                )
            state = next_state
        return state

    def header_lines(self) -> list[str]:
        """Return the host, repository and mount lines shown on every screen."""
        active = self.mounts.active
        mounted = (
            f"{active.archive} at {active.mountpoint}" if active is not None else "nothing mounted"
        )
        return [
            f"Host: {self.host}",
            f"Repository: {self.ctx.name} ({self.ctx.locator}) [{self.ctx.status.label}]",
            f"Mount: {mounted}",
        ]

    # Screens ---------------------------------------------------------------
    def _main_menu(self, state: MainMenu) -> Screen:
        self.prompter.screen(f"borgnav: {self.ctx.name}", self.header_lines())
        choice = self.prompter.select(
            "Main menu",
            ["Archives", "Backups", "Change repository", "Quit"],
        )
        if choice == 0:
            return ArchiveList()
        if choice == 1:
            return BackupList()
        if choice == 3:
            return Quit()
        return ChangeRepo()

    def _archive_list(self, state: ArchiveList) -> Screen:
        archives = state.archives
        if archives is None:
            secret = self.passphrases.ensure(self.ctx)
            with self.busy(f"Listing archives in {self.ctx.name}"):
                archives = tuple(self.provider.list_archives(self.ctx, secret))
        if not archives:
            self.prompter.message(f"No archives found in repository {self.ctx.name}.")
            self.prompter.pause()
            return MainMenu()

        self.prompter.screen("Archives", self.header_lines())
        labels = [_archive_label(archive) for archive in archives]
        choice = self.prompter.select("Select archive", [*labels, "Back"])
        if choice is None or choice == len(archives):
            return MainMenu()
        return ArchiveAction(archives[choice].name, archives)

    def _archive_action(self, state: ArchiveAction) -> Screen:
        actions: list[tuple[str, Screen]] = [
            ("Browse files", BrowseFiles(state.archive, state.archives)),
        ]
        if self.mount_available:
            actions.append(("Mount", MountPrompt(state.archive, state.archives)))
        active = self.mounts.active
        if active is not None:
            actions.append(
                (
                    f"Unmount current ({active.archive})",
                    UnmountCurrent(state.archive, state.archives),
                )
            )
        actions.append(("Back", ArchiveList(state.archives)))

        self.prompter.screen(f"Archive {state.archive}", self.header_lines())
        choice = self.prompter.select("Action", [label for label, _ in actions])
        if choice is None:
            return ArchiveList(state.archives)
        return actions[choice][1]

    def _browse_files(self, state: BrowseFiles) -> Screen:
        if state.items is None:
            secret = self.passphrases.ensure(self.ctx)
            with self.busy(f"Listing files in {state.archive}"):
                items = tuple(self.provider.list_items(self.ctx, state.archive, secret))
            if not items:
                self.prompter.message(f"Archive {state.archive} is empty.")
                self.prompter.pause()
                return ArchiveList(state.archives)
            state = replace(state, items=items)
        items = state.items or ()

        self.prompter.screen(f"Files in {state.archive}", self.header_lines())
        labels = [_item_label(item) for item in items]
        choice = self.prompter.select("Select a file to extract", [*labels, "Back"])
        if choice is None or choice == len(items):
            return ArchiveList(state.archives)

        item = items[choice]
        if not self.prompter.confirm(f"Extract {item.path}?", default=False):
            return state
        destination = self.prompter.text("Destination directory", default=".")
        if not destination:
            return state
        secret = self.passphrases.ensure(self.ctx)
        target = Path(destination).expanduser()
        with self.busy(f"Extracting {item.path}"):
            self.provider.extract(self.ctx, state.archive, item.path, target, secret)
        self.prompter.message(f"Extracted {item.path} to {target}", style="green")
        return state

    def _mount_prompt(self, state: MountPrompt) -> Screen:
        back = ArchiveAction(state.archive, state.archives)
        active = self.mounts.active
        if active is not None:
            question = (
                f"{active.archive} is mounted at {active.mountpoint}. Unmount it first?"
            )
            if not self.prompter.confirm(question, default=True):
                self.prompter.message("Mount cancelled.")
                return back

        secret = self.passphrases.ensure(self.ctx)
        if active is not None:
            with self.busy(f"Unmounting {active.mountpoint}"):
                self.mounts.unmount(self.ctx, active.mountpoint, secret)

        default = default_mountpoint(self.ctx, state.archive)
        answer = self.prompter.text("Mountpoint", default=str(default))
        if not answer:
            return back
        mountpoint = Path(answer).expanduser()
        with self.busy(f"Mounting {state.archive}"):
            session = self.mounts.mount(self.ctx, state.archive, mountpoint, secret)
        self.prompter.message(
            f"Mounted {session.archive} at {session.mountpoint}", style="green"
        )
        return back

    def _unmount_current(self, state: UnmountCurrent) -> Screen:
        back = ArchiveAction(state.archive, state.archives)
        active = self.mounts.active
        if active is None:
            self.prompter.message("Nothing is mounted.")
            return back
        secret = self.passphrases.ensure(self.ctx)
        with self.busy(f"Unmounting {active.mountpoint}"):
            self.mounts.unmount(self.ctx, active.mountpoint, secret)
        self.prompter.message(f"Unmounted {active.mountpoint}", style="green")
        return back

    def _backup_list(self, state: BackupList) -> Screen:
        presets = self.ctx.backup_presets
        self.prompter.screen("Backups", self.header_lines())
        if not presets:
            question = f"No backup presets configured for {self.ctx.name}. Add one now?"
            if self.prompter.confirm(question, default=True):
                return AddPreset()
            return MainMenu()

        labels = [
            f"{preset.name}  ({', '.join(preset.includes) or 'no includes'})"
            for preset in presets
        ]
        choice = self.prompter.select("Select backup preset", [*labels, "Add preset", "Back"])
        if choice is None or choice == len(presets) + 1:
            return MainMenu()
        if choice == len(presets):
            return AddPreset()
        return BackupRun(presets[choice].name)

    def _backup_run(self, state: BackupRun) -> Screen:
        preset = find_preset(self.ctx.backup_presets, state.preset)
        secret = self.passphrases.ensure(self.ctx)
        with self.busy(f"Creating archive from preset {preset.name}"):
            result = self.backups.run(self.ctx, preset, secret)
        self._record(
            "backup.created",
            status="success",
            detail={"preset": preset.name, "archive": result.archive},
        )
        self.prompter.message(f"Created archive {result.archive}", style="green")
        self.prompter.pause()
        return BackupList()

    def _add_preset(self, state: AddPreset) -> Screen:
        outcome = add_preset(self.config, self.ctx.name, self.prompter)
        if outcome is None:
            self.prompter.message("No preset added.")
            return BackupList()
        self.config = outcome.config
        self.ctx.backup_presets = (*self.ctx.backup_presets, outcome.entry)
        self._record("wizard.add_preset", status="success", detail={"preset": outcome.entry.name})
        self.prompter.message(f"Added preset {outcome.entry.name}", style="green")
        return BackupList()

    def _record(self, name: str, *, status: str = "info", detail: object = None) -> None:
        if self.op is not None:
            self.op.add_step(name, status=status, detail=detail)


# Repository selection ------------------------------------------------------


def select_repository(
    repositories: Sequence[RepositoryContext],
    prompter: Prompter,
    *,
    allow_add: bool = True,
) -> RepositoryContext | AddRepository | Quit:
    """Offer *repositories* annotated with their reachability status."""
    prompter.screen("Repositories", [f"Host: {current_host()}"])
    labels = [
        f"{repo.name}  {repo.locator}  [{repo.status.label}]" for repo in repositories
    ]
    extras = ["Add repository", "Quit"] if allow_add else ["Quit"]
    choice = prompter.select("Select repository", [*labels, *extras])
    if choice is None:
        return Quit()
    if choice < len(repositories):
        return repositories[choice]
    if allow_add and choice == len(repositories):
        return AddRepository()
    return Quit()


def _context_for(config: AppConfig, name: str) -> RepositoryContext:
    for candidate in resolve_repositories(config):
        if candidate.name == name:
            candidate.status = probe(candidate.locator, config.probe_remote)
            return candidate
    raise LookupError(name)  # pragma: no cover - the wizard just added it


def run_interactive(
    config: AppConfig,
    repositories: Sequence[RepositoryContext],
    *,
    requested: str | None,
    prompter: Prompter,
    provider: BorgProvider,
    passphrases: PassphraseCache,
    op: OperationScope | None = None,
    busy: BusyIndicator | None = None,
    host: str | None = None,
) -> AppConfig:
    """Run the interactive console until the operator quits.

    *repositories* must already carry their probe status. Returns the
    configuration as amended by the wizards during the session.
    """
    contexts = list(repositories)
    mounts = MountManager(provider)
    ctx: RepositoryContext | None = None
    if contexts or requested is not None:
        ctx = pick_repository(contexts, requested, CommandKind.INTERACTIVE)

    while True:
        if ctx is None:
            choice = select_repository(contexts, prompter)
            if isinstance(choice, Quit):
                return config
            if isinstance(choice, AddRepository):
                outcome = add_repository(config, prompter, provider, passphrases)
                if outcome is not None:
                    config = outcome.config
                    contexts = [
                        repo for repo in contexts if repo.name in config.repository_names()
                    ]
                    contexts.append(_context_for(config, outcome.entry.name))
                    if op is not None:
                        op.add_step(
                            "wizard.add_repository",
                            status="success",
                            detail={"repository": outcome.entry.name},
                        )
                continue
            ctx = choice

        if ctx.status.needs_attention:
            prompter.message(
                f"Warning: {attention_message(ctx.name, ctx.locator, ctx.status)}",
                style="yellow",
            )
        try:
            mount_available = mounts.probe_support(ctx)
            unavailable = "borg reports no FUSE support"
        except EngineInvocationError as exc:
            mount_available = False
            unavailable = str(exc)
            if op is not None:
                op.add_step("mount.support", status="warning", detail=unavailable)
        if not mount_available:
            prompter.message(f"Mounting is disabled: {unavailable}.", style="yellow")

        navigator = Navigator(
            ctx,
            config=config,
            provider=provider,
            prompter=prompter,
            passphrases=passphrases,
            mounts=mounts,
            mount_available=mount_available,
            op=op,
            busy=busy,
            host=host,
        )
        outcome_state = navigator.run()
        config = navigator.config

        if isinstance(outcome_state, ChangeRepo):
            if mounts.active is not None:
                try:
                    released = mounts.release(ctx, passphrases.ensure(ctx))
                except OperationFailedError as exc:
                    prompter.message(f"Cannot change repository: {exc}", style="red")
                    prompter.pause()
                    continue
                if released is not None:
                    prompter.message(f"Unmounted {released.mountpoint}", style="green")
            ctx = None
            continue

        active = mounts.active
        if active is not None:
            question = f"{active.archive} is still mounted at {active.mountpoint}. Unmount it?"
            if prompter.confirm(question, default=True):
                try:
                    mounts.release(ctx, passphrases.ensure(ctx))
                except OperationFailedError as exc:
                    prompter.message(f"Unmount failed: {exc}", style="red")
                else:
                    prompter.message(f"Unmounted {active.mountpoint}", style="green")
        return config


__all__ = [
    "AddPreset",
    "AddRepository",
    "ArchiveAction",
    "ArchiveList",
    "BackupList",
    "BackupRun",
    "BrowseFiles",
    "ChangeRepo",
    "MainMenu",
    "MountPrompt",
    "Navigator",
    "Quit",
    "Screen",
    "UnmountCurrent",
    "current_host",
    "format_size",
    "parent_of",
    "run_interactive",
    "select_repository",
]
