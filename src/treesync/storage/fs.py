"""Atomic file writes, root bootstrap, and path-key mapping.

Document keys are forward-slash paths relative to the synchronized root,
always starting with ``/`` (``/notes/today.md``).
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path, PurePosixPath

from treesync.core.errors import FilesystemError, SyncRootError

META_DIR = ".sync"
TMP_PREFIX = ".tmp."


def _fsync_directory(path: Path) -> None:
    """Fsync a directory so a rename into it is durable.

    Not every platform supports fsync on a directory descriptor; ``OSError``
    is ignored.
    """
    try:
        fd = os.open(str(path), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        pass


def atomic_write(path: Path, content: str | bytes, *, make_parents: bool = False) -> None:
    """Write content to path atomically via temp file + fsync + rename.

    The temp file lives next to the target (``.tmp.*``, ignored by the
    watcher) so ``os.replace`` stays on one filesystem.

    Raises:
        FileNotFoundError: If the parent directory does not exist and
            *make_parents* is false.
    """
    parent = path.parent
    if make_parents:
        parent.mkdir(parents=True, exist_ok=True)
    elif not parent.is_dir():
        raise FileNotFoundError(f"Parent directory does not exist: {parent}")

    data = content.encode("utf-8") if isinstance(content, str) else content

    fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=TMP_PREFIX)
    closed = False
    try:
        mv = memoryview(data)
        while mv:
            written = os.write(fd, mv)
            mv = mv[written:]
        os.fsync(fd)
        os.close(fd)
        closed = True
        os.replace(tmp_path, path)
        _fsync_directory(parent)
    except BaseException:
        if not closed:
            os.close(fd)
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def ensure_root(directory: str | Path) -> Path:
    """Resolve the synchronized root, creating it if absent.

    Raises:
        SyncRootError: If the path cannot be created or is not a directory.
    """
    root = Path(directory).expanduser().resolve()
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SyncRootError(f"cannot create sync root {root}: {exc}") from exc
    if not root.is_dir():
        raise SyncRootError(f"sync root is not a directory: {root}")
    return root


def meta_dir(root: Path) -> Path:
    return root / META_DIR


def scratch_dir(root: Path, peer_id: str) -> Path:
    """Sibling directory holding this peer's transient snapshot cache."""
    return root.parent / f".{peer_id}"


def to_key(root: Path, path: Path) -> str:
    """Map an absolute filesystem path under *root* to its document key.

    Raises:
        ValueError: If *path* is not inside *root*.
    """
    rel = Path(os.path.abspath(path)).relative_to(root)
    return "/" + rel.as_posix()


def to_path(root: Path, key: str) -> Path:
    """Map a document key to a filesystem path under *root*.

    Raises:
        ValueError: If the key is empty or would escape the root.
    """
    parts = PurePosixPath(key.lstrip("/")).parts
    if not parts or any(part in ("..", "") for part in parts):
        raise ValueError(f"invalid document key: {key!r}")
    return root.joinpath(*parts)


def read_file(path: Path, key: str) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise FilesystemError(key, f"read failed: {exc}") from exc


def write_file(path: Path, key: str, data: bytes) -> None:
    """Atomically write *data*, creating parent directories as needed."""
    try:
        atomic_write(path, data, make_parents=True)
    except OSError as exc:
        raise FilesystemError(key, f"write failed: {exc}") from exc


def remove_file(path: Path, key: str) -> bool:
    """Delete a file.  Returns ``False`` if it was already absent."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise FilesystemError(key, f"delete failed: {exc}") from exc
    return True


def file_matches(path: Path, digest: str) -> bool:
    """Return ``True`` if *path* is a regular file whose SHA-256 is *digest*."""
    from treesync.core.ledger import sha256_hex

    try:
        return path.is_file() and sha256_hex(path.read_bytes()) == digest
    except OSError:
        return False
