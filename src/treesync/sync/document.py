"""Replicated path -> file record mapping backed by an Automerge document.

Each synchronized file is a root-level key (its ``/``-prefixed path) whose
value is a map ``{content: bytes, timestamp: int}``.  Keeping paths at the
root avoids the conflict two independently created ``files`` containers
would produce.  Concurrent writes to one key resolve last-writer-wins by
Automerge's operation ordering.

Peers replicate with Automerge's sync protocol: each side keeps one
``PeerState`` per connection, and an update blob is an encoded sync
message carrying only the changes that peer has not acknowledged yet.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass

from automerge import Document, core

from treesync.core.errors import MergeError

logger = logging.getLogger(__name__)


class Origin(enum.Enum):
    """Who produced a document mutation."""

    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class FileRecord:
    content: bytes
    timestamp: int


@dataclass(frozen=True)
class FileChange:
    """One changed key.  ``record`` is ``None`` for deletions."""

    path: str
    action: str  # "upsert" | "delete"
    record: FileRecord | None = None


Observer = Callable[[Origin, list[FileChange]], None]
UpdateListener = Callable[[], None]
PeerState = core.SyncState


class ReplicatedDocument:
    """CRDT document holding the shared tree."""

    def __init__(self) -> None:
        self._doc = Document()
        self._observers: list[Observer] = []
        self._update_listeners: list[UpdateListener] = []

    # -- reads --------------------------------------------------------------

    def files(self) -> dict[str, FileRecord]:
        """Return a snapshot of every record, keyed by path."""
        return _records(self._doc.to_py())

    def get_file(self, path: str) -> FileRecord | None:
        return self.files().get(path)

    def __contains__(self, path: object) -> bool:
        return path in self.files()

    def __len__(self) -> int:
        return len(self.files())

    # -- mutations ----------------------------------------------------------

    def set_file(
        self,
        path: str,
        content: bytes,
        timestamp: int,
        origin: Origin = Origin.REMOTE,
    ) -> None:
        """Upsert the record for *path* in one transaction tagged *origin*."""
        before = self.files()
        with self._doc.change() as d:
            d[path] = {"content": bytes(content), "timestamp": int(timestamp)}
        self._committed(origin, before)

    def delete_file(self, path: str, origin: Origin = Origin.REMOTE) -> bool:
        """Remove *path*.  Returns ``False`` (and broadcasts nothing) if absent."""
        before = self.files()
        if path not in before:
            return False
        with self._doc.change() as d:
            del d[path]
        self._committed(origin, before)
        return True

    def merge_update(self, blob: bytes, peer: PeerState) -> list[FileChange]:
        """Apply a sync message received from the peer tracked by *peer*.

        Observers are notified with ``Origin.REMOTE`` for the keys the
        message changed.  Changes the document already holds are skipped,
        so receiving the same message twice leaves the state unchanged.

        Raises:
            MergeError: If the blob is not a decodable sync message or
                cannot be applied.
        """
        try:
            message = core.Message.decode(bytes(blob))
        except Exception as exc:
            raise MergeError(f"cannot decode update ({len(blob)} bytes): {exc}") from exc

        before = self.files()
        try:
            self._doc._doc.receive_sync_message(peer, message)
        except Exception as exc:
            raise MergeError(f"cannot apply update: {exc}") from exc

        changes = _diff(before, self.files())
        if changes:
            self._notify(Origin.REMOTE, changes)
        return changes

    def encode_update(self, peer: PeerState) -> bytes | None:
        """Encode what *peer* still lacks, or ``None`` if there is nothing to send."""
        message = self._doc._doc.generate_sync_message(peer)
        if message is None:
            return None
        return bytes(message.encode())

    @staticmethod
    def new_peer_state() -> PeerState:
        """Fresh sync bookkeeping for a newly connected peer."""
        return core.SyncState()

    # -- subscriptions ------------------------------------------------------

    def observe(self, callback: Observer) -> None:
        """Register *callback* for ``(origin, changes)`` after each mutation batch."""
        self._observers.append(callback)

    def on_update(self, listener: UpdateListener) -> None:
        """Register *listener*, called after each local change that altered the document."""
        self._update_listeners.append(listener)

    def _committed(self, origin: Origin, before: dict[str, FileRecord]) -> None:
        changes = _diff(before, self.files())
        if not changes:
            return
        self._notify(origin, changes)
        for listener in list(self._update_listeners):
            listener()

    def _notify(self, origin: Origin, changes: list[FileChange]) -> None:
        for callback in list(self._observers):
            try:
                callback(origin, changes)
            except Exception:
                logger.exception("document observer failed")


def _records(state: dict) -> dict[str, FileRecord]:
    records: dict[str, FileRecord] = {}
    for path, value in state.items():
        if not isinstance(value, dict) or "content" not in value:
            continue
        records[path] = FileRecord(
            content=bytes(value["content"]),
            timestamp=int(value.get("timestamp", 0)),
        )
    return records


def _diff(old: dict[str, FileRecord], new: dict[str, FileRecord]) -> list[FileChange]:
    """Compare two record maps and list the changed keys in path order."""
    changes: list[FileChange] = []
    for path in sorted(set(old) | set(new)):
        record = new.get(path)
        if record is None:
            changes.append(FileChange(path, "delete"))
        elif old.get(path) != record:
            changes.append(FileChange(path, "upsert", record))
    return changes
