"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import textwrap
from pathlib import Path

import pytest

from borgnav.config import RepositoryContext

FAKE_BORG_SCRIPT = textwrap.dedent(
    """\
    #!/bin/sh
    dir="{root}"
    printf '%s\\n' "$*" >> "$dir/calls.log"
    if [ -n "${{BORG_PASSPHRASE+x}}" ]; then
        printf 'set:%s\\n' "$BORG_PASSPHRASE" >> "$dir/env.log"
    else
        printf 'unset\\n' >> "$dir/env.log"
    fi
    pwd >> "$dir/cwd.log"
    key="$1"
    case "$2" in
        --json-lines) key="$1-items" ;;
        --help) key="$1-help" ;;
    esac
    if [ -f "$dir/$key.out" ]; then cat "$dir/$key.out"; fi
    if [ -f "$dir/$key.err" ]; then cat "$dir/$key.err" >&2; fi
    if [ -f "$dir/$key.rc" ]; then exit "$(cat "$dir/$key.rc")"; fi
    exit 0
    """
)


class FakeBorg:
    """Shell-script stand-in for the borg binary.

    Every invocation is appended to ``calls.log`` (arguments), ``env.log``
    (whether ``BORG_PASSPHRASE`` was set) and ``cwd.log``. Canned output is
    looked up by subcommand, e.g. ``list``, ``list-items`` (for
    ``--json-lines``) or ``mount-help``.
    """

    def __init__(self, root: Path) -> None:
        """Install the script under *root*."""
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.path = root / "borg"
        self.path.write_text(FAKE_BORG_SCRIPT.format(root=root), encoding="utf-8")
        self.path.chmod(0o755)

    def respond(self, key: str, *, stdout: str = "", stderr: str = "", rc: int = 0) -> None:
        """Configure the canned response for *key*."""
        (self.root / f"{key}.out").write_text(stdout, encoding="utf-8")
        (self.root / f"{key}.err").write_text(stderr, encoding="utf-8")
        (self.root / f"{key}.rc").write_text(str(rc), encoding="utf-8")

    def _lines(self, name: str) -> list[str]:
        path = self.root / name
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    @property
    def calls(self) -> list[str]:
        """Return the argument strings of every invocation so far."""
        return self._lines("calls.log")

    @property
    def env(self) -> list[str]:
        """Return ``set:<value>`` or ``unset`` per invocation."""
        return self._lines("env.log")

    @property
    def cwds(self) -> list[str]:
        """Return the working directory of every invocation."""
        return self._lines("cwd.log")


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the operator's borg and borgnav settings out of the tests."""
    for key in list(os.environ):
        if key.startswith("BORGNAV_") or key in {"BORG_PASSPHRASE", "BORG_PASSCOMMAND"}:
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def fake_borg(tmp_path: Path) -> FakeBorg:
    """Return a fake borg binary scoped to the temporary path."""
    return FakeBorg(tmp_path / "fake-borg")


@pytest.fixture
def repo_context(tmp_path: Path, fake_borg: FakeBorg) -> RepositoryContext:
    """Return a context for an existing local repository using the fake engine."""
    repo = tmp_path / "repo"
    repo.mkdir()
    return RepositoryContext(
        name="main",
        locator=str(repo),
        engine_path=str(fake_borg.path),
        mount_root=tmp_path / "mnt",
    )
