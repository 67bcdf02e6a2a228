"""Configuration loader and repository resolution for borgnav.

Configuration values are layered from the following sources:

1. Built-in defaults.
2. A YAML file: ``--config`` (or ``BORGNAV_CONFIG_FILE``), otherwise the first
   existing of ``$XDG_CONFIG_HOME/borgnav/config.yml``,
   ``~/.config/borgnav/config.yml`` and ``./config.yml``.
3. Environment variables prefixed with ``BORGNAV_``.
4. Explicit overrides supplied programmatically.

Environment keys use double underscores to express nesting, e.g.::

    export BORGNAV_PROBE_REMOTE=false
    export BORGNAV_REPO=/srv/borg/repo

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally.

A configuration either lists ``repositories`` or names a single legacy
``repo``. :func:`resolve_repositories` turns both forms into an ordered list
of :class:`RepositoryContext` objects carrying the effective engine path and
mount root (repository override, else the global value).
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import cast

import yaml

from .connectivity import ReachabilityStatus

ENV_PREFIX = "BORGNAV_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
CONFIG_FILE_NAME = "config.yml"
LEGACY_REPOSITORY_NAME = "default"


class ConfigError(RuntimeError):
    """Raised when configuration parsing or repository resolution fails."""


class CommandKind(str, Enum):
    """The CLI command that is asking for a repository."""

    LIST = "list"
    FILES = "files"
    INTERACTIVE = "interactive"
    MOUNT = "mount"
    UMOUNT = "umount"
    BACKUP = "backup"

    @property
    def is_interactive(self) -> bool:
        """Return True for the long-running interactive console."""
        return self is CommandKind.INTERACTIVE

    @property
    def can_choose_repository(self) -> bool:
        """Return True when the command may prompt for a repository."""
        return self in {CommandKind.INTERACTIVE, CommandKind.BACKUP}


@dataclass(frozen=True)
class BackupPreset:
    """A named, reusable recipe for one category of backup archive."""

    name: str
    includes: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    compression: str | None = None
    one_file_system: bool = False
    exclude_caches: bool = False
    archive_prefix: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "name": self.name,
            "includes": list(self.includes),
        }
        if self.excludes:
            payload["excludes"] = list(self.excludes)
        if self.compression:
            payload["compression"] = self.compression
        if self.one_file_system:
            payload["one_file_system"] = True
        if self.exclude_caches:
            payload["exclude_caches"] = True
        if self.archive_prefix:
            payload["archive_prefix"] = self.archive_prefix
        return payload


@dataclass(frozen=True)
class RepositoryConfig:
    """A repository entry as written in the configuration file."""

    name: str
    locator: str
    engine_path: str | None = None
    mount_root: Path | None = None
    backup_presets: tuple[BackupPreset, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "locator": self.locator}
        if self.engine_path:
            payload["engine_path"] = self.engine_path
        if self.mount_root is not None:
            payload["mount_root"] = str(self.mount_root)
        if self.backup_presets:
            payload["backup_presets"] = [preset.to_dict() for preset in self.backup_presets]
        return payload


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for borgnav."""

    config_file: Path | None
    engine_path: str
    mount_root: Path
    probe_remote: bool
    probe_concurrency: int
    logs_dir: Path | None
    repositories: tuple[RepositoryConfig, ...] = ()
    legacy_repo: str | None = None
    searched: tuple[Path, ...] = ()
    file_values: Mapping[str, object] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file) if self.config_file else None,
            "engine_path": self.engine_path,
            "mount_root": str(self.mount_root),
            "probe_remote": self.probe_remote,
            "probe_concurrency": self.probe_concurrency,
            "logs_dir": str(self.logs_dir) if self.logs_dir else None,
            "repositories": [repo.to_dict() for repo in self.repositories],
            "repo": self.legacy_repo,
        }

    def repository_names(self) -> list[str]:
        """Return the configured repository names in order."""
        if self.repositories:
            return [repo.name for repo in self.repositories]
        if self.legacy_repo:
            return [LEGACY_REPOSITORY_NAME]
        return []

    def with_repository(self, repository: RepositoryConfig) -> AppConfig:
        """Return a copy with *repository* appended.

        A legacy single ``repo`` is converted into a ``default`` entry first so
        the result always uses the ``repositories`` form.
        """
        if repository.name in self.repository_names():
            raise ConfigError(f"Repository '{repository.name}' already exists.")
        existing = list(self.repositories)
        if not existing and self.legacy_repo:
            existing.append(RepositoryConfig(name=LEGACY_REPOSITORY_NAME, locator=self.legacy_repo))
        existing.append(repository)
        return replace(self, repositories=tuple(existing), legacy_repo=None)

    def with_preset(self, repository_name: str, preset: BackupPreset) -> AppConfig:
        """Return a copy with *preset* appended to *repository_name*."""
        base = self
        if not self.repositories and self.legacy_repo:
            base = replace(
                self,
                repositories=(
                    RepositoryConfig(name=LEGACY_REPOSITORY_NAME, locator=self.legacy_repo),
                ),
                legacy_repo=None,
            )
        updated: list[RepositoryConfig] = []
        found = False
        for repo in base.repositories:
            if repo.name == repository_name:
                found = True
                if any(existing.name == preset.name for existing in repo.backup_presets):
                    raise ConfigError(
                        f"Backup preset '{preset.name}' already exists in repository "
                        f"'{repository_name}'."
                    )
                repo = replace(repo, backup_presets=(*repo.backup_presets, preset))
            updated.append(repo)
        if not found:
            raise ConfigError(f"Repository '{repository_name}' not found.")
        return replace(base, repositories=tuple(updated))


@dataclass(slots=True)
class RepositoryContext:
    """Effective settings for one repository, plus its reachability status."""

    name: str
    locator: str
    engine_path: str
    mount_root: Path
    backup_presets: tuple[BackupPreset, ...] = ()
    status: ReachabilityStatus = ReachabilityStatus.UNKNOWN

    def preset_names(self) -> list[str]:
        """Return the names of the configured backup presets."""
        return [preset.name for preset in self.backup_presets]

    def archive_locator(self, archive: str) -> str:
        """Return the ``<repo>::<archive>`` locator understood by the engine."""
        return f"{self.locator}::{archive}"


def _default_mount_root() -> str:
    return str(Path(tempfile.gettempdir()) / "borgnav-mounts")


def _default_logs_dir(env: Mapping[str, str]) -> str:
    state_home = env.get("XDG_STATE_HOME")
    if state_home:
        return str(Path(state_home) / "borgnav" / "logs")
    return str(Path("~/.local/state/borgnav/logs"))


def _defaults(env: Mapping[str, str]) -> dict[str, object]:
    return {
        "engine_path": "borg",
        "mount_root": _default_mount_root(),
        "probe_remote": True,
        "probe_concurrency": 4,
        "logs_dir": _default_logs_dir(env),
        "repositories": None,
        "repo": None,
    }


ALLOWED_TOP_LEVEL_KEYS = set(_defaults({}).keys())
ALLOWED_REPOSITORY_KEYS = {"name", "locator", "engine_path", "mount_root", "backup_presets"}
ALLOWED_PRESET_KEYS = {
    "name",
    "includes",
    "excludes",
    "compression",
    "one_file_system",
    "exclude_caches",
    "archive_prefix",
}


def candidate_config_paths(
    env: Mapping[str, str],
    *,
    cwd: Path | None = None,
) -> list[Path]:
    """Return the default config file locations in lookup order."""
    candidates: list[Path] = []
    xdg = env.get("XDG_CONFIG_HOME")
    if xdg:
        candidates.append(Path(xdg) / "borgnav" / CONFIG_FILE_NAME)
    home = env.get("HOME")
    if home:
        candidates.append(Path(home) / ".config" / "borgnav" / CONFIG_FILE_NAME)
    candidates.append((cwd or Path.cwd()) / CONFIG_FILE_NAME)
    return candidates


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
    cwd: Path | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    resolved_env = dict(os.environ if env is None else env)
    merged: dict[str, object] = _defaults(resolved_env)

    config_path, searched = _determine_config_path(config_file, resolved_env, cwd)

    file_values: dict[str, object] = {}
    if config_path is not None:
        file_values = _load_yaml_file(config_path)
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    _validate_structure(merged)

    return _build_app_config(merged, config_path, searched, file_values)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
    cwd: Path | None,
) -> tuple[Path | None, tuple[Path, ...]]:
    explicit: Path | None = None
    if cli_override:
        explicit = Path(cli_override).expanduser()
    elif env.get(CONFIG_ENV_VAR):
        explicit = Path(env[CONFIG_ENV_VAR]).expanduser()
    if explicit is not None:
        if not explicit.exists():
            raise ConfigError(f"Cannot read config file {explicit}: file not found.")
        return explicit, (explicit,)

    searched = tuple(candidate_config_paths(env, cwd=cwd))
    for candidate in searched:
        if candidate.is_file():
            return candidate, searched
    return None, searched


def _load_yaml_file(path: Path) -> dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    legacy = raw.get("repo")
    if legacy is not None and not isinstance(legacy, str):
        raise ConfigError("repo must be a string path or URL.")

    repositories = raw.get("repositories")
    if repositories is None:
        return
    seen: set[str] = set()
    for index, entry in enumerate(_as_sequence(repositories, "repositories")):
        label = f"repositories[{index}]"
        mapping = _as_dict(entry, label)
        unknown = set(mapping.keys()) - ALLOWED_REPOSITORY_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for {label}: {joined}.")
        name = _expect_name(mapping.get("name"), f"{label}.name")
        if name in seen:
            raise ConfigError(f"Duplicate repository name '{name}'.")
        seen.add(name)
        _expect_name(mapping.get("locator"), f"{label}.locator")

        preset_names: set[str] = set()
        presets = mapping.get("backup_presets")
        if presets is None:
            continue
        for preset_index, preset in enumerate(_as_sequence(presets, f"{label}.backup_presets")):
            preset_label = f"{label}.backup_presets[{preset_index}]"
            preset_map = _as_dict(preset, preset_label)
            unknown_preset = set(preset_map.keys()) - ALLOWED_PRESET_KEYS
            if unknown_preset:
                joined = ", ".join(sorted(unknown_preset))
                raise ConfigError(f"Unknown keys for {preset_label}: {joined}.")
            preset_name = _expect_name(preset_map.get("name"), f"{preset_label}.name")
            if preset_name in preset_names:
                raise ConfigError(
                    f"Duplicate backup preset '{preset_name}' in repository '{name}'."
                )
            preset_names.add(preset_name)


def _build_app_config(
    raw: Mapping[str, object],
    config_path: Path | None,
    searched: tuple[Path, ...],
    file_values: Mapping[str, object],
) -> AppConfig:
    engine_path = _expect_str(raw.get("engine_path"), "engine_path").strip() or "borg"
    concurrency = _expect_int(raw.get("probe_concurrency"), "probe_concurrency", default=4)
    if concurrency < 1:
        raise ConfigError("probe_concurrency must be at least 1.")

    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value not in (None, "") else None

    repositories: list[RepositoryConfig] = []
    raw_repositories = raw.get("repositories")
    if raw_repositories is not None:
        for index, entry in enumerate(_as_sequence(raw_repositories, "repositories")):
            repositories.append(_build_repository(_as_dict(entry, f"repositories[{index}]")))

    legacy_value = raw.get("repo")
    legacy_repo = legacy_value.strip() if isinstance(legacy_value, str) else None

    return AppConfig(
        config_file=config_path,
        engine_path=engine_path,
        mount_root=_to_path(raw.get("mount_root")),
        probe_remote=_expect_bool(raw.get("probe_remote"), "probe_remote", default=True),
        probe_concurrency=concurrency,
        logs_dir=logs_dir,
        repositories=tuple(repositories),
        legacy_repo=legacy_repo or None,
        searched=searched,
        file_values=dict(file_values),
    )


def _build_repository(mapping: Mapping[str, object]) -> RepositoryConfig:
    name = _expect_name(mapping.get("name"), "repository name")
    engine_value = mapping.get("engine_path")
    mount_value = mapping.get("mount_root")
    presets_raw = mapping.get("backup_presets")
    presets: list[BackupPreset] = []
    if presets_raw is not None:
        for index, preset in enumerate(_as_sequence(presets_raw, f"{name}.backup_presets")):
            presets.append(
                _build_preset(_as_dict(preset, f"{name}.backup_presets[{index}]"), name)
            )
    return RepositoryConfig(
        name=name,
        locator=_expect_name(mapping.get("locator"), f"{name}.locator"),
        engine_path=_expect_optional_str(engine_value, f"{name}.engine_path"),
        mount_root=_to_path(mount_value) if mount_value not in (None, "") else None,
        backup_presets=tuple(presets),
    )


def _build_preset(mapping: Mapping[str, object], repository: str) -> BackupPreset:
    name = _expect_name(mapping.get("name"), f"{repository} preset name")
    label = f"{repository}.{name}"
    return BackupPreset(
        name=name,
        includes=_expect_str_list(mapping.get("includes"), f"{label}.includes"),
        excludes=_expect_str_list(mapping.get("excludes"), f"{label}.excludes"),
        compression=_expect_optional_str(mapping.get("compression"), f"{label}.compression"),
        one_file_system=_expect_bool(
            mapping.get("one_file_system"), f"{label}.one_file_system", default=False
        ),
        exclude_caches=_expect_bool(
            mapping.get("exclude_caches"), f"{label}.exclude_caches", default=False
        ),
        archive_prefix=_expect_optional_str(
            mapping.get("archive_prefix"), f"{label}.archive_prefix"
        ),
    )


# Repository resolution -----------------------------------------------------


def resolve_repositories(config: AppConfig) -> list[RepositoryContext]:
    """Return the configured repositories with effective settings applied."""
    if config.repositories:
        return [
            RepositoryContext(
                name=repo.name,
                locator=repo.locator,
                engine_path=repo.engine_path or config.engine_path,
                mount_root=repo.mount_root or config.mount_root,
                backup_presets=repo.backup_presets,
            )
            for repo in config.repositories
        ]
    if config.legacy_repo:
        return [
            RepositoryContext(
                name=LEGACY_REPOSITORY_NAME,
                locator=config.legacy_repo,
                engine_path=config.engine_path,
                mount_root=config.mount_root,
            )
        ]
    message = "No repositories configured in config file"
    if config.config_file is not None:
        message = f"{message} {config.config_file}"
    elif config.searched:
        tried = ", ".join(str(path) for path in config.searched)
        message = f"{message}. No config file found. Tried: {tried}"
    raise ConfigError(f"{message}.")


def pick_repository(
    repositories: Sequence[RepositoryContext],
    requested: str | None,
    command: CommandKind,
) -> RepositoryContext | None:
    """Return the repository to use, or ``None`` when the operator must choose.

    ``None`` is only returned for commands that may prompt; single-shot
    commands with several repositories and no ``--repo`` fail instead.
    """
    if not repositories:
        raise ConfigError("No repositories configured in config file.")

    if len(repositories) == 1:
        only = repositories[0]
        if requested is not None and requested != only.name:
            raise ConfigError(
                f"Repo '{requested}' not found. Only available repo: {only.name}"
            )
        return only

    names = ", ".join(repo.name for repo in repositories)
    if requested is not None:
        for repo in repositories:
            if repo.name == requested:
                return repo
        raise ConfigError(f"Repo '{requested}' not found. Available: {names}")

    if command.can_choose_repository:
        return None
    raise ConfigError(
        "Multiple repositories configured. Please choose with --repo <name>. "
        f"Available: {names}"
    )


# Persistence ---------------------------------------------------------------


def save_config(config: AppConfig, path: Path | None = None) -> Path:
    """Persist the repositories of *config* to its YAML file atomically.

    Keys other than ``repositories``/``repo`` are preserved as they were read
    from the file.
    """
    target = path or config.config_file or candidate_config_paths(dict(os.environ))[0]
    payload: dict[str, object] = {
        key: value
        for key, value in config.file_values.items()
        if key not in {"repo", "repositories"}
    }
    if config.repositories:
        payload["repositories"] = [repo.to_dict() for repo in config.repositories]
    elif config.legacy_repo:
        payload["repo"] = config.legacy_repo

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    except OSError as exc:
        raise ConfigError(f"Failed to prepare config directory {target.parent}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False, default_flow_style=False)
        os.replace(tmp_path, target)
    except OSError as exc:
        raise ConfigError(f"Failed to write config file {target}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return target


# Helpers -------------------------------------------------------------------


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_optional_str(value: object, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _expect_name(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value.strip()


def _expect_str_list(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    items: list[str] = []
    for index, item in enumerate(_as_sequence(value, label)):
        if not isinstance(item, str):
            raise ConfigError(f"{label}[{index}] must be a string.")
        items.append(item)
    return tuple(items)


__all__ = [
    "AppConfig",
    "BackupPreset",
    "CommandKind",
    "ConfigError",
    "RepositoryConfig",
    "RepositoryContext",
    "candidate_config_paths",
    "load_config",
    "pick_repository",
    "resolve_repositories",
    "save_config",
]
