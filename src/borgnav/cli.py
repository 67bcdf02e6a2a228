"""Typer-powered command line for ``borgnav``.

``borgnav`` without a command starts the interactive console. The single-shot
commands (``list``, ``files``, ``mount``, ``umount``, ``backup``) resolve one
repository, refuse to run against a repository that probes as missing or
refusing authentication, perform one engine action and exit.
"""
from __future__ import annotations

import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupOrchestrator, find_preset
from .config import (
    AppConfig,
    CommandKind,
    ConfigError,
    RepositoryContext,
    load_config,
    pick_repository,
    resolve_repositories,
)
from .connectivity import attention_message, probe_repositories
from .credentials import PassphraseCache
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .mounts import MountManager, MountStateError, default_mountpoint
from .navigator import format_size, run_interactive, select_repository
from .prompts import ConsolePrompter, Prompter, SelectionAbandoned
from .providers import (
    BorgProvider,
    EngineError,
    EngineInvocationError,
    EngineRunner,
)

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    dir_okay=False,
    help="Path to borgnav's YAML config file.",
)

REPO_OPTION = typer.Option(
    None,
    "--repo",
    "-r",
    help="Name of the configured repository to operate on.",
)

MOUNT_TARGET_OPTION = typer.Option(
    None,
    "--target",
    "-t",
    file_okay=False,
    help="Mountpoint to use (defaults to <mount_root>/<archive>).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Operator console for Borg backup repositories.

        Run without a command to browse archives, mount them, extract files
        and run backup presets interactively.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    prompter: Prompter
    passphrases: PassphraseCache
    runner: EngineRunner
    requested_repo: str | None = None


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    repo: str | None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        if repo is not None:
            runtime.requested_repo = repo
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(str(exc), style="red", markup=False, highlight=False)
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    prompter = ConsolePrompter(console)
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        prompter=prompter,
        passphrases=PassphraseCache(prompter),
        runner=EngineRunner(),
        requested_repo=repo,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the borgnav version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    repo: str | None = REPO_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"borgnav {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, repo)

    if ctx.invoked_subcommand is None:
        interactive(ctx)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(message, style="red", markup=False, highlight=False)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, SelectionAbandoned):
        return ExitCode.ABANDONED
    if isinstance(exc, EngineInvocationError):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, EngineError):
        return ExitCode.PROVIDER
    return ExitCode.VALIDATION


@contextmanager
def _guarded(op: OperationScope) -> Iterator[None]:
    """Translate domain errors raised inside a command into exit codes."""
    try:
        yield
    except KeyboardInterrupt:
        _command_error(op, "Interrupted.", rc=ExitCode.INTERRUPTED)
    except (ConfigError, EngineError, MountStateError, BackupError, SelectionAbandoned) as exc:
        _command_error(op, str(exc) or type(exc).__name__, rc=_exit_code_for(exc))


def _open_repository(
    runtime: RuntimeContext,
    op: OperationScope,
    command: CommandKind,
) -> RepositoryContext:
    """Resolve, probe and vet the repository for a single-shot *command*."""
    config = runtime.config
    contexts = resolve_repositories(config)
    chosen = pick_repository(contexts, runtime.requested_repo, command)
    targets = contexts if chosen is None else [chosen]
    probe_repositories(targets, config.probe_remote, max_workers=config.probe_concurrency)
    op.add_step(
        "repositories.probe",
        detail={repo.name: repo.status.value for repo in targets},
    )

    if chosen is None:
        selection = select_repository(contexts, runtime.prompter, allow_add=False)
        if not isinstance(selection, RepositoryContext):
            raise SelectionAbandoned("No repository selected.")
        chosen = selection

    if chosen.status.needs_attention:
        _command_error(op, attention_message(chosen.name, chosen.locator, chosen.status))
    return chosen


def _choose(prompter: Prompter, prompt: str, options: Sequence[str]) -> int:
    choice = prompter.select(prompt, options)
    if choice is None:
        raise SelectionAbandoned(f"{prompt}: nothing selected.")
    return choice


@app.command("list")
def list_archives(ctx: typer.Context) -> None:
    """List the archives stored in the repository."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"repo": runtime.requested_repo},
        target={"kind": "repository"},
    ) as op, _guarded(op):
        repo = _open_repository(runtime, op, CommandKind.LIST)
        provider = BorgProvider(runtime.runner, op)
        secret = runtime.passphrases.ensure(repo)
        with console.status(f"Listing archives in {repo.name}"):
            archives = provider.list_archives(repo, secret)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Archive", style="bold")
        table.add_column("Time")
        if not archives:
            table.add_row("(none)", "")
        for archive in archives:
            table.add_row(archive.name, archive.time or "")
        console.print(table)
        op.success(
            f"Listed {len(archives)} archives.",
            context={"repository": repo.name, "archives": len(archives)},
        )


@app.command("files")
def list_files(
    ctx: typer.Context,
    archive: str | None = typer.Argument(
        None,
        help="Archive to list (prompted for when omitted).",
    ),
) -> None:
    """List the files stored in an archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "files",
        args={"repo": runtime.requested_repo, "archive": archive},
        target={"kind": "archive", "name": archive},
    ) as op, _guarded(op):
        repo = _open_repository(runtime, op, CommandKind.FILES)
        provider = BorgProvider(runtime.runner, op)
        secret = runtime.passphrases.ensure(repo)
        if archive is None:
            archives = provider.list_archives(repo, secret)
            if not archives:
                _command_error(op, f"No archives found in repository {repo.name}.")
            index = _choose(runtime.prompter, "Select archive", [a.name for a in archives])
            archive = archives[index].name

        with console.status(f"Listing files in {archive}"):
            items = provider.list_items(repo, archive, secret)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Path", style="bold")
        table.add_column("Type")
        table.add_column("Size", justify="right")
        if not items:
            table.add_row("(empty)", "", "")
        for item in items:
            table.add_row(item.path, item.type or "", format_size(item.size))
        console.print(table)
        op.success(
            f"Listed {len(items)} items of {archive}.",
            context={"repository": repo.name, "archive": archive, "items": len(items)},
        )


@app.command()
def interactive(ctx: typer.Context) -> None:
    """Browse archives, mount them and run backups interactively."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "interactive",
        args={"repo": runtime.requested_repo},
        target={"kind": "session"},
    ) as op, _guarded(op):
        config = runtime.config
        try:
            contexts = resolve_repositories(config)
        except ConfigError as exc:
            if runtime.requested_repo is not None or not runtime.prompter.confirm(
                f"{exc} Add a repository now?", default=True
            ):
                raise
            contexts = []
        probe_repositories(contexts, config.probe_remote, max_workers=config.probe_concurrency)
        op.add_step(
            "repositories.probe",
            detail={repo.name: repo.status.value for repo in contexts},
        )
        final_config = run_interactive(
            config,
            contexts,
            requested=runtime.requested_repo,
            prompter=runtime.prompter,
            provider=BorgProvider(runtime.runner, op),
            passphrases=runtime.passphrases,
            op=op,
            busy=console.status,
        )
        runtime.config = final_config
        op.success("Interactive session finished.")


@app.command()
def mount(
    ctx: typer.Context,
    archive: str = typer.Argument(..., help="Archive to mount."),
    target: Path | None = MOUNT_TARGET_OPTION,
) -> None:
    """Mount an archive read-only; it stays mounted after borgnav exits."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "mount",
        args={"repo": runtime.requested_repo, "archive": archive, "target": target},
        target={"kind": "archive", "name": archive},
    ) as op, _guarded(op):
        repo = _open_repository(runtime, op, CommandKind.MOUNT)
        mounts = MountManager(BorgProvider(runtime.runner, op))
        if not mounts.probe_support(repo):
            _command_error(
                op,
                "Mounting is not available: borg reports no FUSE support.",
                rc=ExitCode.ENVIRONMENT,
            )
        mountpoint = (target or default_mountpoint(repo, archive)).expanduser()
        secret = runtime.passphrases.ensure(repo)
        with console.status(f"Mounting {archive}"):
            session = mounts.mount(repo, archive, mountpoint, secret)
        console.print(f"[green]Mounted {session.archive} at {session.mountpoint}[/green]")
        console.print(f"Unmount with: borgnav umount {session.mountpoint}", highlight=False)
        op.success(
            "Archive mounted.",
            changed=1,
            context={"repository": repo.name, "mountpoint": session.mountpoint},
        )


@app.command()
def umount(
    ctx: typer.Context,
    mountpoint: Path = typer.Argument(..., help="Mountpoint to release."),
) -> None:
    """Unmount an archive mounted earlier."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "umount",
        args={"repo": runtime.requested_repo, "mountpoint": mountpoint},
        target={"kind": "mountpoint", "path": mountpoint},
    ) as op, _guarded(op):
        repo = _open_repository(runtime, op, CommandKind.UMOUNT)
        mounts = MountManager(BorgProvider(runtime.runner, op))
        mounts.unmount(repo, mountpoint.expanduser())
        console.print(f"[green]Unmounted {mountpoint}[/green]")
        op.success("Archive unmounted.", changed=1, context={"mountpoint": mountpoint})


@app.command()
def backup(
    ctx: typer.Context,
    preset: str | None = typer.Argument(
        None,
        help="Backup preset to run (prompted for when omitted).",
    ),
) -> None:
    """Create an archive from a configured backup preset."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup",
        args={"repo": runtime.requested_repo, "preset": preset},
        target={"kind": "preset", "name": preset},
    ) as op, _guarded(op):
        repo = _open_repository(runtime, op, CommandKind.BACKUP)
        presets = repo.backup_presets
        if preset is None:
            if not presets:
                raise BackupError(f"No backup presets configured for repository '{repo.name}'.")
            chosen = presets[_choose(runtime.prompter, "Select backup preset", repo.preset_names())]
        else:
            chosen = find_preset(presets, preset)

        secret = runtime.passphrases.ensure(repo)
        orchestrator = BackupOrchestrator(BorgProvider(runtime.runner, op))
        with console.status(f"Creating archive from preset {chosen.name}"):
            result = orchestrator.run(repo, chosen, secret)
        console.print(f"[green]Created archive {result.archive} in {repo.name}[/green]")
        op.success(
            "Backup archive created.",
            changed=1,
            context={"repository": repo.name, "preset": chosen.name, "archive": result.archive},
        )


def main() -> None:
    """Entry point used by the console script."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
