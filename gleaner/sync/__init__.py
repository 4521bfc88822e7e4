"""Incremental sync and write-back against the annotation service."""

from .engine import (
    SyncEngine,
    SyncState,
    SyncReport,
    MoveReport,
    WriteBackResult,
    WriteBackStatus
)

__all__ = [
    "SyncEngine",
    "SyncState",
    "SyncReport",
    "MoveReport",
    "WriteBackResult",
    "WriteBackStatus"
]
