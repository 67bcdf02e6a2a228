"""Read-only reachability probes for repository locators.

A locator is *remote* when it carries a URI scheme (``ssh://host/repo``) or
uses the SCP-style ``user@host:path`` form; anything else is a local path.
Local locators are checked on the filesystem. Remote locators are checked
with a non-interactive ``ssh`` call when probing is enabled. The result is
advisory: it annotates the repository chooser and decides between a warning
and a hard failure, it never mutates anything.
"""
from __future__ import annotations

import concurrent.futures
import re
import subprocess
from collections.abc import Callable, Sequence
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import RepositoryContext

PROBE_TIMEOUT_SECONDS = 5
AUTH_FAILURE_MARKERS = ("permission denied", "publickey", "password")

_SCP_PATTERN = re.compile(r"^[^@/\s]*@([^:/\s]+):")


class ReachabilityStatus(str, Enum):
    """Outcome of probing a repository locator."""

    REACHABLE = "ok"
    MISSING_LOCAL = "missing"
    REMOTE_REACHABLE = "remote-ok"
    REMOTE_AUTH_UNCLEAR = "remote-auth?"
    UNKNOWN = "remote?"

    @property
    def label(self) -> str:
        """Return the short label shown next to a repository."""
        return self.value

    @property
    def needs_attention(self) -> bool:
        """Return True when selecting the repository deserves a warning."""
        return self in {ReachabilityStatus.MISSING_LOCAL, ReachabilityStatus.REMOTE_AUTH_UNCLEAR}


def attention_message(name: str, locator: str, status: ReachabilityStatus) -> str:
    """Describe why repository *name* needs attention before use."""
    if status is ReachabilityStatus.MISSING_LOCAL:
        return f"Repository '{name}' not found: {locator} does not exist (status: {status.label})."
    if status is ReachabilityStatus.REMOTE_AUTH_UNCLEAR:
        return (
            f"Repository '{name}' at {locator}: ssh authentication was refused; "
            f"check your keys or agent (status: {status.label})."
        )
    return f"Repository '{name}' at {locator} has status {status.label}."


def is_remote(locator: str) -> bool:
    """Return True when *locator* points at a remote repository."""
    return "://" in locator or _SCP_PATTERN.match(locator) is not None


def extract_host(locator: str) -> str | None:
    """Return the bare host name of a remote *locator*.

    Scheme, user-info, port and path are stripped; local paths yield ``None``.
    """
    if "://" in locator:
        rest = locator.split("://", 1)[1]
        authority = rest.split("/", 1)[0]
        host_port = authority.rsplit("@", 1)[-1]
        if host_port.startswith("["):
            host = host_port[1:].split("]", 1)[0]
        else:
            host = host_port.split(":", 1)[0]
        return host or None

    match = _SCP_PATTERN.match(locator)
    if match is None:
        return None
    return match.group(1) or None


def _run_ssh(host: str, timeout: int) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603, S607 - fixed argument vector
        [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            f"ConnectTimeout={timeout}",
            host,
            "true",
        ],
        capture_output=True,
        text=True,
        check=False,
        # ConnectTimeout only bounds the TCP connect, not the auth exchange.
        timeout=timeout * 2,
    )


def probe_remote(locator: str, *, timeout: int = PROBE_TIMEOUT_SECONDS) -> ReachabilityStatus:
    """Attempt a batch-mode ssh connection to the host behind *locator*."""
    host = extract_host(locator)
    if host is None:
        return ReachabilityStatus.UNKNOWN
    try:
        result = _run_ssh(host, timeout)
    except (OSError, subprocess.TimeoutExpired):
        return ReachabilityStatus.UNKNOWN
    if result.returncode == 0:
        return ReachabilityStatus.REMOTE_REACHABLE
    stderr = (result.stderr or "").lower()
    if any(marker in stderr for marker in AUTH_FAILURE_MARKERS):
        return ReachabilityStatus.REMOTE_AUTH_UNCLEAR
    return ReachabilityStatus.UNKNOWN


def probe(locator: str, probing_enabled: bool) -> ReachabilityStatus:
    """Return the reachability status of *locator*."""
    if is_remote(locator):
        if not probing_enabled:
            return ReachabilityStatus.UNKNOWN
        return probe_remote(locator)
    try:
        exists = Path(locator).expanduser().exists()
    except OSError:
        # An unsearchable parent directory reads as a missing repository.
        exists = False
    if exists:
        return ReachabilityStatus.REACHABLE
    return ReachabilityStatus.MISSING_LOCAL


def probe_repositories(
    repositories: Sequence[RepositoryContext],
    probing_enabled: bool,
    *,
    max_workers: int = 4,
    on_result: Callable[[RepositoryContext], None] | None = None,
) -> None:
    """Assign ``status`` on every repository, probing with bounded concurrency.

    All probes finish before this returns; *on_result* is called in
    configuration order once the results are joined.
    """
    if not repositories:
        return

    workers = max(1, min(max_workers, len(repositories)))
    if workers == 1:
        statuses = [probe(repo.locator, probing_enabled) for repo in repositories]
    else:
        statuses_by_index: dict[int, ReachabilityStatus] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index = {
                executor.submit(probe, repo.locator, probing_enabled): index
                for index, repo in enumerate(repositories)
            }
            for future in concurrent.futures.as_completed(future_to_index):
                statuses_by_index[future_to_index[future]] = future.result()
        statuses = [statuses_by_index[index] for index in range(len(repositories))]

    for repo, status in zip(repositories, statuses, strict=True):
        repo.status = status
        if on_result is not None:
            on_result(repo)


__all__ = [
    "AUTH_FAILURE_MARKERS",
    "PROBE_TIMEOUT_SECONDS",
    "ReachabilityStatus",
    "attention_message",
    "extract_host",
    "is_remote",
    "probe",
    "probe_remote",
    "probe_repositories",
]
