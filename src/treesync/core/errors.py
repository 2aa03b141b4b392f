"""Error taxonomy shared by the sync engine and its collaborators."""

from __future__ import annotations


class TreesyncError(Exception):
    """Base class for all treesync errors."""


class ProtocolError(TreesyncError):
    """A frame parsed as a control record but is not a valid control message."""


class MergeError(TreesyncError):
    """An update blob could not be loaded or merged into the document."""


class TransferError(TreesyncError):
    """A snapshot transfer could not locate the sender or did not complete."""


class FilesystemError(TreesyncError):
    """A read, write or delete on the synchronized tree failed."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class SyncRootError(TreesyncError):
    """The synchronized root could not be created, resolved or locked."""
