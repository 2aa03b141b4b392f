"""Bidirectional bridge between the synchronized tree and the replicated document.

Handles two flows:
1. Local file change -> ledger echo check -> document mutation (``Origin.LOCAL``)
2. Remote document change -> file write/delete -> ledger record

The ledger entry written in flow 2 is what lets flow 1 recognise, and drop,
the watcher event caused by our own write.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from treesync.core.errors import FilesystemError
from treesync.core.ledger import HashLedger, sha256_hex
from treesync.storage.fs import file_matches, read_file, remove_file, to_key, to_path, write_file
from treesync.sync.document import FileChange, Origin, ReplicatedDocument

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class FileBridge:
    """Moves changes between files under ``root`` and a ``ReplicatedDocument``."""

    def __init__(self, root: Path, document: ReplicatedDocument, ledger: HashLedger) -> None:
        self.root = root
        self.document = document
        self.ledger = ledger

    def attach(self) -> None:
        """Register as the document's observer."""
        self.document.observe(self.on_document_change)

    # -----------------------------------------------------------------------
    # Local filesystem -> document
    # -----------------------------------------------------------------------

    def on_local_change(self, path: Path) -> bool:
        """A file was created or modified.  Returns ``True`` if the document changed."""
        key = to_key(self.root, path)
        try:
            data = read_file(path, key)
        except FilesystemError as exc:
            logger.warning("skipping %s: %s", key, exc)
            return False

        if self.ledger.is_echo(key, sha256_hex(data)):
            logger.debug("echo suppressed: %s", key)
            return False

        self.document.set_file(key, data, now_ms(), Origin.LOCAL)
        logger.info("UPDATE: %s", key)
        return True

    def absorb_echo(self, path: Path) -> bool:
        """Consume the ledger entry matching *path*'s current content, if any.

        Used while the document is not accepting local edits, so a write the
        engine made still clears its entry.
        """
        key = to_key(self.root, path)
        try:
            data = read_file(path, key)
        except FilesystemError:
            return False
        return self.ledger.is_echo(key, sha256_hex(data))

    def on_local_delete(self, path: Path) -> bool:
        key = to_key(self.root, path)
        if self.document.delete_file(key, Origin.LOCAL):
            logger.info("DELETE: %s", key)
            return True
        return False

    def on_local_delete_tree(self, path: Path) -> int:
        """A directory disappeared: delete every key beneath it."""
        prefix = to_key(self.root, path).rstrip("/") + "/"
        count = 0
        for key in list(self.document.files()):
            if key.startswith(prefix) and self.document.delete_file(key, Origin.LOCAL):
                logger.info("DELETE: %s", key)
                count += 1
        return count

    # -----------------------------------------------------------------------
    # Document -> local filesystem
    # -----------------------------------------------------------------------

    def on_document_change(self, origin: Origin, changes: list[FileChange]) -> None:
        """Observer callback.  Local-origin batches are our own edits: skip them."""
        if origin is Origin.LOCAL:
            return
        for change in changes:
            try:
                self._apply(change)
            except (FilesystemError, ValueError) as exc:
                logger.error("cannot apply remote change to %s: %s", change.path, exc)

    def _apply(self, change: FileChange) -> None:
        path = to_path(self.root, change.path)

        if change.action == "delete":
            if remove_file(path, change.path):
                logger.info("remote DELETE: %s", change.path)
            return

        assert change.record is not None
        content = change.record.content
        digest = sha256_hex(content)
        if file_matches(path, digest):
            # Already on disk; no write means no watcher event to absorb.
            return

        write_file(path, change.path, content)
        self.ledger.record(change.path, digest)
        logger.info("remote UPDATE: %s", change.path)
