"""Echo-suppression bookkeeping for writes the engine performed itself."""

from __future__ import annotations

import hashlib


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of *data*."""
    return hashlib.sha256(data).hexdigest()


class HashLedger:
    """Per-path sets of content hashes awaiting their filesystem echo.

    A hash is recorded when the engine writes a file (remote apply or
    snapshot ingestion) and consumed when the watcher reports that same
    content at that path.  Never persisted.
    """

    def __init__(self) -> None:
        self._hashes: dict[str, set[str]] = {}

    def record(self, path: str, digest: str) -> None:
        self._hashes.setdefault(path, set()).add(digest)

    def is_echo(self, path: str, digest: str) -> bool:
        """Consume *digest* for *path* if it was recorded.

        Returns ``False`` and leaves the ledger untouched when the digest
        was not recorded for that path.
        """
        hashes = self._hashes.get(path)
        if hashes is None or digest not in hashes:
            return False
        hashes.discard(digest)
        if not hashes:
            del self._hashes[path]
        return True

    def pending(self, path: str) -> frozenset[str]:
        """Return the hashes currently recorded for *path*."""
        return frozenset(self._hashes.get(path, ()))

    def __contains__(self, path: object) -> bool:
        return path in self._hashes

    def __len__(self) -> int:
        return len(self._hashes)
