"""Tests for the borgnav CLI."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import yaml
from typer.testing import CliRunner, Result

from borgnav import __version__, connectivity
from borgnav.cli import RuntimeContext, app
from borgnav.config import load_config
from borgnav.connectivity import ReachabilityStatus
from borgnav.credentials import PassphraseCache
from borgnav.exit_codes import ExitCode
from borgnav.logging import StructuredLogger
from borgnav.prompts import QueuePrompter
from borgnav.providers.engine import EngineRunner

if TYPE_CHECKING:
    from conftest import FakeBorg

runner = CliRunner()

ARCHIVES_JSON = json.dumps(
    {
        "archives": [
            {"archive": "main-home-2024-01-01_00-00-00", "time": "2024-01-01T00:00:00"},
            {"archive": "main-etc-2024-01-02_00-00-00", "time": "2024-01-02T00:00:00"},
        ]
    }
)


@pytest.fixture(autouse=True)
def _engine_passphrase(monkeypatch: pytest.MonkeyPatch) -> None:
    """Let the engine source its secret so commands never prompt for it."""
    monkeypatch.setenv("BORG_PASSPHRASE", "pw")


def _write_config(
    tmp_path: Path,
    fake_borg: FakeBorg,
    repositories: list[dict[str, object]],
    **extra: object,
) -> Path:
    """Write a config file pointing at the fake engine and a private logs dir."""
    payload: dict[str, object] = {
        "engine_path": str(fake_borg.path),
        "mount_root": str(tmp_path / "mnt"),
        "logs_dir": str(tmp_path / "logs"),
        "repositories": repositories,
    }
    payload.update(extra)
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


def _local_repo(tmp_path: Path, name: str = "main", **extra: object) -> dict[str, object]:
    repo = tmp_path / name
    repo.mkdir(exist_ok=True)
    return {"name": name, "locator": str(repo), **extra}


def _invoke(config: Path, *args: str, input: str | None = None) -> Result:
    return runner.invoke(app, ["--config", str(config), *args], input=input)


def _flat(result: Result) -> str:
    """Return the output with Rich line wrapping collapsed."""
    return " ".join(result.output.split())


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_option() -> None:
    """``--version`` prints the package version and exits."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.output.strip() == f"borgnav {__version__}"


def test_help_lists_commands() -> None:
    """Every command is registered on the app."""
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("list", "files", "interactive", "mount", "umount", "backup"):
        assert command in result.output


def test_unreadable_config_is_validation_error(tmp_path: Path) -> None:
    """A missing ``--config`` file fails before any command runs."""
    result = _invoke(tmp_path / "absent.yml", "list")

    assert result.exit_code == ExitCode.VALIDATION
    assert "file not found" in _flat(result)


def test_list_prints_archives_and_logs_operation(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """``list`` renders the archives and appends an operation record."""
    fake_borg.respond("list", stdout=ARCHIVES_JSON)
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "list")

    assert result.exit_code == 0, result.output
    assert "main-home-2024-01-01_00-00-00" in result.output
    assert "main-etc-2024-01-02_00-00-00" in result.output
    assert fake_borg.calls == [f"list --json {tmp_path / 'main'}"]
    assert fake_borg.env == ["set:pw"]

    record = _operations(tmp_path)[0]
    assert record["command"] == "list"
    assert [step["name"] for step in record["steps"]] == ["repositories.probe", "engine.list"]
    assert record["steps"][0]["detail"] == {"main": "ok"}
    assert record["result"]["status"] == "success"
    assert record["result"]["context"] == {"repository": "main", "archives": 2}


def test_list_empty_repository(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """An empty repository is shown as such, not as an error."""
    fake_borg.respond("list", stdout='{"archives": []}')
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "list")

    assert result.exit_code == 0
    assert "(none)" in result.output


def test_list_refuses_missing_local_repository(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Single-shot commands fail fast on a repository that does not exist."""
    config = _write_config(
        tmp_path, fake_borg, [{"name": "main", "locator": "/nonexistent/path"}]
    )

    result = _invoke(config, "list")

    assert result.exit_code == ExitCode.VALIDATION
    assert "Repository 'main' not found: /nonexistent/path does not exist" in _flat(result)
    assert fake_borg.calls == []
    assert _operations(tmp_path)[0]["result"]["rc"] == ExitCode.VALIDATION


@pytest.mark.parametrize("command", [["list"], ["backup", "home"]])
def test_single_shot_commands_refuse_unclear_remote_auth(
    tmp_path: Path, fake_borg: FakeBorg, monkeypatch: pytest.MonkeyPatch, command: list[str]
) -> None:
    """Refused ssh authentication stops single-shot commands before borg runs."""
    probed: list[str] = []

    def refused(locator: str, **kwargs: object) -> ReachabilityStatus:
        probed.append(locator)
        return ReachabilityStatus.REMOTE_AUTH_UNCLEAR

    monkeypatch.setattr(connectivity, "probe_remote", refused)
    config = _write_config(
        tmp_path,
        fake_borg,
        [
            {
                "name": "nas",
                "locator": "backup@nas.example:borg",
                "backup_presets": [{"name": "home", "includes": ["/home"]}],
            }
        ],
    )

    result = _invoke(config, *command)

    assert result.exit_code == ExitCode.VALIDATION
    assert "ssh authentication was refused" in _flat(result)
    assert probed == ["backup@nas.example:borg"]
    assert fake_borg.calls == []
    record = _operations(tmp_path)[0]
    assert record["steps"][0]["detail"] == {"nas": ReachabilityStatus.REMOTE_AUTH_UNCLEAR.value}
    assert record["result"]["rc"] == ExitCode.VALIDATION


def test_multiple_repositories_require_repo_option(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Without ``--repo`` a single-shot command cannot choose between repositories."""
    fake_borg.respond("list", stdout=ARCHIVES_JSON)
    config = _write_config(
        tmp_path, fake_borg, [_local_repo(tmp_path), _local_repo(tmp_path, "other")]
    )

    ambiguous = _invoke(config, "list")
    chosen = _invoke(config, "--repo", "other", "list")
    unknown = _invoke(config, "--repo", "nope", "list")

    assert ambiguous.exit_code == ExitCode.VALIDATION
    assert "Please choose with --repo <name>. Available: main, other" in _flat(ambiguous)
    assert chosen.exit_code == 0
    assert fake_borg.calls == [f"list --json {tmp_path / 'other'}"]
    assert unknown.exit_code == ExitCode.VALIDATION
    assert "Repo 'nope' not found. Available: main, other" in _flat(unknown)


def test_legacy_single_repo_key(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """A config with only ``repo`` works as the ``default`` repository."""
    fake_borg.respond("list", stdout=ARCHIVES_JSON)
    repo = tmp_path / "legacy"
    repo.mkdir()
    config = tmp_path / "config.yml"
    config.write_text(
        yaml.safe_dump(
            {
                "engine_path": str(fake_borg.path),
                "logs_dir": str(tmp_path / "logs"),
                "repo": str(repo),
            }
        ),
        encoding="utf-8",
    )

    result = _invoke(config, "--repo", "default", "list")

    assert result.exit_code == 0, result.output
    assert fake_borg.calls == [f"list --json {repo}"]


def test_missing_engine_is_environment_error(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """A borg binary that cannot be started maps to the environment exit code."""
    config = _write_config(
        tmp_path,
        fake_borg,
        [_local_repo(tmp_path)],
        engine_path=str(tmp_path / "no-such-borg"),
    )

    result = _invoke(config, "list")

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "Failed to invoke" in _flat(result)


def test_engine_failure_is_provider_error(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """A non-zero borg exit maps to the provider exit code."""
    fake_borg.respond("list", stderr="Failed to create/acquire the lock", rc=2)
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "list")

    assert result.exit_code == ExitCode.PROVIDER
    assert "borg list failed with status 2: Failed to create/acquire the lock" in _flat(result)


def test_files_for_named_archive(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """``files ARCHIVE`` lists the archive items with sizes."""
    fake_borg.respond(
        "list-items",
        stdout='{"path": "etc", "type": "d"}\n{"path": "etc/hosts", "type": "-", "size": 2048}\n',
    )
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "files", "main-etc-2024-01-02_00-00-00")

    assert result.exit_code == 0, result.output
    assert "etc/hosts" in result.output
    assert "2.0 KiB" in result.output
    assert fake_borg.calls == [
        f"list --json-lines {tmp_path / 'main'}::main-etc-2024-01-02_00-00-00"
    ]


def test_files_prompts_for_archive(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Without an archive argument the operator picks one from the list."""
    fake_borg.respond("list", stdout=ARCHIVES_JSON)
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "files", input="2\n")

    assert result.exit_code == 0, result.output
    assert "(empty)" in result.output
    assert fake_borg.calls[-1] == (
        f"list --json-lines {tmp_path / 'main'}::main-etc-2024-01-02_00-00-00"
    )


def test_files_abandoned_selection(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Backing out of the archive choice exits with the abandoned code."""
    fake_borg.respond("list", stdout=ARCHIVES_JSON)
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "files", input="b\n")

    assert result.exit_code == ExitCode.ABANDONED
    assert len(fake_borg.calls) == 1


def test_backup_named_preset(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """``backup PRESET`` creates an archive named after the preset."""
    data = tmp_path / "data"
    data.mkdir()
    repo = _local_repo(
        tmp_path, backup_presets=[{"name": "data", "includes": [str(data)], "compression": "lz4"}]
    )
    config = _write_config(tmp_path, fake_borg, [repo])

    result = _invoke(config, "backup", "data")

    assert result.exit_code == 0, result.output
    assert "Created archive main-data-" in _flat(result)
    assert fake_borg.calls[0].startswith("create --compression lz4 --exclude ")
    record = _operations(tmp_path)[0]
    assert record["result"]["changed"] == 1
    assert record["result"]["context"]["preset"] == "data"


def test_backup_unknown_preset(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Unknown preset names list the available ones."""
    repo = _local_repo(tmp_path, backup_presets=[{"name": "data", "includes": ["/data"]}])
    config = _write_config(tmp_path, fake_borg, [repo])

    result = _invoke(config, "backup", "docs")

    assert result.exit_code == ExitCode.VALIDATION
    assert "Backup preset 'docs' not found. Available: data" in _flat(result)
    assert fake_borg.calls == []


def test_backup_without_presets(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """A repository without presets cannot back up."""
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "backup")

    assert result.exit_code == ExitCode.VALIDATION
    assert "No backup presets configured for repository 'main'." in _flat(result)


def test_backup_permission_failure_carries_hint(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Permission errors from borg suggest elevated rights."""
    fake_borg.respond("create", stderr="/root: [Errno 13] Permission denied", rc=2)
    repo = _local_repo(tmp_path, backup_presets=[{"name": "root", "includes": ["/root"]}])
    config = _write_config(tmp_path, fake_borg, [repo])

    result = _invoke(config, "backup", "root")

    assert result.exit_code == ExitCode.PROVIDER
    assert "hint: run with sudo for system paths" in _flat(result)


def test_backup_prompts_for_repository_and_preset(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Backups may pick the repository and the preset interactively."""
    data = tmp_path / "data"
    data.mkdir()
    presets = [{"name": "data", "includes": [str(data)]}, {"name": "etc", "includes": ["/etc"]}]
    config = _write_config(
        tmp_path,
        fake_borg,
        [_local_repo(tmp_path), _local_repo(tmp_path, "other", backup_presets=presets)],
    )

    result = _invoke(config, "backup", input="2\n1\n")

    assert result.exit_code == 0, result.output
    assert "Created archive other-data-" in _flat(result)


def test_mount_without_fuse_support(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Mounting is refused up front when borg reports no FUSE support."""
    fake_borg.respond(
        "mount-help", stderr="borg mount not available: no FUSE support, BORG_FUSE_IMPL=.", rc=2
    )
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "mount", "main-home-2024-01-01_00-00-00")

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "Mounting is not available: borg reports no FUSE support." in _flat(result)
    assert fake_borg.calls == ["mount --help"]


def test_mount_with_missing_engine_names_the_binary(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """A borg binary that cannot be started is reported as such, not as missing FUSE."""
    engine = tmp_path / "no-such-borg"
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)], engine_path=str(engine))

    result = _invoke(config, "mount", "main-home-2024-01-01_00-00-00")

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "Failed to invoke" in _flat(result)
    assert "FUSE" not in _flat(result)
    record = _operations(tmp_path)[0]
    assert record["result"]["rc"] == ExitCode.ENVIRONMENT
    assert f"Failed to invoke {engine} binary" in record["result"]["message"]
    assert fake_borg.calls == []


def test_mount_and_umount(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """``mount`` leaves the archive mounted and tells how to release it."""
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])
    mountpoint = tmp_path / "mp"

    mounted = _invoke(config, "mount", "arch", "--target", str(mountpoint))
    released = _invoke(config, "umount", str(mountpoint))

    assert mounted.exit_code == 0, mounted.output
    assert f"Unmount with: borgnav umount {mountpoint}" in _flat(mounted)
    assert released.exit_code == 0, released.output
    assert fake_borg.calls == [
        "mount --help",
        f"mount {tmp_path / 'main'}::arch {mountpoint}",
        f"umount {mountpoint}",
    ]


def test_mount_default_target_under_mount_root(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Without ``--target`` the archive is mounted below the mount root."""
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = _invoke(config, "mount", "arch")

    assert result.exit_code == 0, result.output
    assert (tmp_path / "mnt" / "arch").is_dir()


def test_interactive_warns_on_missing_repository(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """The interactive console warns about a missing repository and carries on."""
    config = _write_config(
        tmp_path, fake_borg, [{"name": "main", "locator": "/nonexistent/path"}]
    )

    result = _invoke(config, input="4\n")

    assert result.exit_code == 0, result.output
    flat = _flat(result)
    assert "Warning: Repository 'main' not found" in flat
    assert "Host:" in flat
    assert _operations(tmp_path)[0]["command"] == "interactive"


def test_interactive_without_repositories_declined(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Declining the first-run wizard reports the missing repositories."""
    config = tmp_path / "config.yml"
    config.write_text(yaml.safe_dump({"logs_dir": str(tmp_path / "logs")}), encoding="utf-8")

    result = _invoke(config, "interactive", input="n\n")

    assert result.exit_code == ExitCode.VALIDATION
    assert "No repositories configured in config file" in _flat(result)


def _runtime(tmp_path: Path, config: Path, prompter: QueuePrompter) -> RuntimeContext:
    return RuntimeContext(
        config=load_config(config_file=config, env={}),
        logger=StructuredLogger(tmp_path / "logs"),
        prompter=prompter,
        passphrases=PassphraseCache(prompter, env={}),
        runner=EngineRunner(base_env={"PATH": os.environ.get("PATH", os.defpath)}),
    )


def test_interactive_with_scripted_prompter(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """The console can be driven end to end through a scripted prompter."""
    fake_borg.respond("list", stdout=ARCHIVES_JSON)
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])
    prompter = QueuePrompter(["Archives", "s3cret", "main-etc", "Back", "Back", "Quit"])

    result = runner.invoke(app, ["interactive"], obj=_runtime(tmp_path, config, prompter))

    assert result.exit_code == 0, result.output
    assert prompter.remaining == 0
    assert fake_borg.env[-1] == "set:s3cret"
    assert prompter.screens[:3] == [
        "borgnav: main",
        "Archives",
        "Archive main-etc-2024-01-02_00-00-00",
    ]


class _InterruptingPrompter(QueuePrompter):
    def select(self, prompt: str, options: object, *, default: int = 0) -> int | None:
        raise KeyboardInterrupt


def test_interactive_interrupt_exit_code(tmp_path: Path, fake_borg: FakeBorg) -> None:
    """Ctrl-C inside a command exits with 130 and is logged."""
    config = _write_config(tmp_path, fake_borg, [_local_repo(tmp_path)])

    result = runner.invoke(
        app, ["interactive"], obj=_runtime(tmp_path, config, _InterruptingPrompter())
    )

    assert result.exit_code == ExitCode.INTERRUPTED
    assert _operations(tmp_path)[0]["result"]["rc"] == ExitCode.INTERRUPTED
