"""Provider interfaces for borgnav."""
from __future__ import annotations

from .engine import (
    Archive,
    ArchiveItem,
    BorgProvider,
    EngineError,
    EngineInvocationError,
    EngineRunner,
    MalformedEngineOutputError,
    OperationFailedError,
    RunResult,
)

__all__ = [
    "Archive",
    "ArchiveItem",
    "BorgProvider",
    "EngineError",
    "EngineInvocationError",
    "EngineRunner",
    "MalformedEngineOutputError",
    "OperationFailedError",
    "RunResult",
]
