"""Automerge-backed directory synchronization engine."""

from __future__ import annotations

from treesync.sync.bridge import FileBridge
from treesync.sync.document import FileChange, FileRecord, Origin, ReplicatedDocument
from treesync.sync.engine import SyncEngine, SyncState

__all__ = [
    "FileBridge",
    "FileChange",
    "FileRecord",
    "Origin",
    "ReplicatedDocument",
    "SyncEngine",
    "SyncState",
]
