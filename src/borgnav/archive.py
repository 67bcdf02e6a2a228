"""Archive naming helpers shared by backup workflows."""
from __future__ import annotations

from datetime import datetime

from .config import BackupPreset

ARCHIVE_NAME_SEPARATOR = "-"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


def archive_prefix(preset: BackupPreset, repository_name: str) -> str:
    """Return the leading name segment for archives created from *preset*."""
    prefix = (preset.archive_prefix or "").rstrip("-_")
    return prefix or repository_name


def build_archive_name(
    preset: BackupPreset,
    repository_name: str,
    now: datetime | None = None,
) -> str:
    """Return ``<prefix>-<preset>-<YYYY-MM-DD_HH-MM-SS>`` in local time.

    Names are unique only down to the second; two runs of the same preset
    within one second produce the same name and the engine rejects the second.
    """
    moment = now or datetime.now()
    segments = [
        archive_prefix(preset, repository_name),
        preset.name,
        moment.strftime(TIMESTAMP_FORMAT),
    ]
    return ARCHIVE_NAME_SEPARATOR.join(segments)


__all__ = ["ARCHIVE_NAME_SEPARATOR", "TIMESTAMP_FORMAT", "archive_prefix", "build_archive_name"]
