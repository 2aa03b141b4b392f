"""Ownership lock on a synchronized root."""

from __future__ import annotations

from pathlib import Path

from filelock import FileLock, Timeout

from treesync.core.errors import SyncRootError

LOCK_FILENAME = "engine.lock"


def acquire_root_lock(meta_dir: Path) -> FileLock:
    """Take the root's engine lock without waiting.

    Two engines on one root would share a scratch directory and race each
    other's echo bookkeeping, so the second one refuses to start.

    Raises:
        SyncRootError: If another process already holds the lock.
    """
    meta_dir.mkdir(parents=True, exist_ok=True)
    lock = FileLock(meta_dir / LOCK_FILENAME, timeout=0)
    try:
        lock.acquire()
    except Timeout:
        raise SyncRootError(
            f"{meta_dir.parent} is already being synchronized by another process"
        ) from None
    return lock
