"""First-run setup wizards: add a repository, add a backup preset.

A wizard either commits exactly one new entry (returning the updated
configuration) or returns ``None`` and leaves the caller's configuration
untouched. Backing out of any prompt abandons the wizard.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Generic, TypeVar

from .config import (
    AppConfig,
    BackupPreset,
    ConfigError,
    RepositoryConfig,
    RepositoryContext,
    save_config,
)
from .credentials import PassphraseCache
from .prompts import Prompter
from .providers.engine import BorgProvider, OperationFailedError

ENCRYPTION_MODES = ("none", "repokey", "repokey-blake2", "keyfile", "keyfile-blake2")

EntryT = TypeVar("EntryT", RepositoryConfig, BackupPreset)


@dataclass(frozen=True, slots=True)
class WizardResult(Generic[EntryT]):
    """Configuration after a committed wizard, plus the new entry."""

    config: AppConfig
    entry: EntryT
    saved_to: Path | None = None


def _split_patterns(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _ask_unique_name(prompter: Prompter, label: str, taken: list[str]) -> str | None:
    while True:
        answer = prompter.text(f"{label} (leave empty to cancel)")
        if not answer:
            return None
        if answer in taken:
            prompter.message(f"'{answer}' already exists; choose another name.", style="red")
            continue
        return answer


def _offer_save(prompter: Prompter, config: AppConfig) -> Path | None:
    target = config.config_file
    where = str(target) if target is not None else "the default config location"
    if not prompter.confirm(f"Save configuration to {where}?", default=True):
        return None
    try:
        saved = save_config(config)
    except ConfigError as exc:
        prompter.message(f"Could not save configuration: {exc}", style="red")
        return None
    prompter.message(f"Saved configuration to {saved}", style="green")
    return saved


def add_repository(
    config: AppConfig,
    prompter: Prompter,
    provider: BorgProvider,
    passphrases: PassphraseCache,
) -> WizardResult[RepositoryConfig] | None:
    """Ask for a new repository, optionally initialise it, and commit it."""
    prompter.screen("Add repository")
    name = _ask_unique_name(prompter, "Repository name", config.repository_names())
    if name is None:
        return None
    locator = prompter.text("Repository path or URL (leave empty to cancel)")
    if not locator:
        return None
    engine_path = prompter.text("Borg binary", default=config.engine_path)
    if engine_path is None:
        return None
    mount_root = prompter.text("Mount root", default=str(config.mount_root))
    if mount_root is None:
        return None

    entry = RepositoryConfig(
        name=name,
        locator=locator,
        engine_path=engine_path if engine_path and engine_path != config.engine_path else None,
        mount_root=(
            Path(mount_root).expanduser()
            if mount_root and Path(mount_root).expanduser() != config.mount_root
            else None
        ),
    )

    if prompter.confirm(f"Initialize a new repository at {locator}?", default=False):
        choice = prompter.select("Encryption mode", list(ENCRYPTION_MODES), default=1)
        if choice is None:
            return None
        encryption = ENCRYPTION_MODES[choice]
        ctx = RepositoryContext(
            name=name,
            locator=locator,
            engine_path=entry.engine_path or config.engine_path,
            mount_root=entry.mount_root or config.mount_root,
        )
        secret = passphrases.ensure(ctx) if encryption != "none" else None
        try:
            provider.init(ctx, encryption, secret)
        except OperationFailedError as exc:
            prompter.message(f"Repository initialization failed: {exc}", style="red")
            prompter.pause()
            return None
        prompter.message(f"Initialized {locator} ({encryption})", style="green")

    if not prompter.confirm(f"Add repository '{name}' ({locator})?", default=True):
        return None
    updated = config.with_repository(entry)
    return WizardResult(config=updated, entry=entry, saved_to=_offer_save(prompter, updated))


def add_preset(
    config: AppConfig,
    repository: str,
    prompter: Prompter,
) -> WizardResult[BackupPreset] | None:
    """Ask for a new backup preset of *repository* and commit it."""
    prompter.screen("Add backup preset", [f"Repository: {repository}"])
    taken: list[str] = []
    for repo in config.repositories:
        if repo.name == repository:
            taken = [preset.name for preset in repo.backup_presets]
    name = _ask_unique_name(prompter, "Preset name", taken)
    if name is None:
        return None

    includes_raw = prompter.text("Paths to include, comma separated (leave empty to cancel)")
    if not includes_raw:
        return None
    includes = _split_patterns(includes_raw)
    if not includes:
        return None
    excludes_raw = prompter.text("Exclude patterns, comma separated (optional)", default="")
    if excludes_raw is None:
        return None
    compression = prompter.text("Compression, e.g. lz4 or zstd,5 (optional)", default="")
    if compression is None:
        return None
    prefix = prompter.text(f"Archive name prefix (optional, default {repository})", default="")
    if prefix is None:
        return None
    one_file_system = prompter.confirm("Stay on one file system?", default=False)
    exclude_caches = prompter.confirm("Exclude cache directories (CACHEDIR.TAG)?", default=False)

    preset = BackupPreset(
        name=name,
        includes=includes,
        excludes=_split_patterns(excludes_raw),
        compression=compression or None,
        one_file_system=one_file_system,
        exclude_caches=exclude_caches,
        archive_prefix=prefix or None,
    )
    if not prompter.confirm(f"Add preset '{name}' to '{repository}'?", default=True):
        return None
    updated = config.with_preset(repository, preset)
    return WizardResult(config=updated, entry=preset, saved_to=_offer_save(prompter, updated))


__all__ = ["ENCRYPTION_MODES", "WizardResult", "add_preset", "add_repository"]
