"""Recursive filesystem watcher feeding the file bridge.

watchdog delivers events on its observer thread; they are marshalled onto
the engine's asyncio loop, debounced per path until the file stops
changing, and only then handed to the bridge.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterable
from pathlib import Path

from pathspec import PathSpec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from treesync.storage.fs import TMP_PREFIX
from treesync.sync.bridge import FileBridge

logger = logging.getLogger(__name__)

# Directory names (or prefixes) that hold engine metadata, never synced.
METADATA_PREFIXES: tuple[str, ...] = (".sync", ".store")

# Editor swap/backup/lock files, OS metadata, and our own atomic-write temps.
DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    "*.swp",
    "~*",
    ".#*",
    ".DS_Store",
    f"{TMP_PREFIX}*",
)

_CHANGE_EVENTS = frozenset({"created", "modified", "closed"})


class IgnoreMatcher:
    """Decides whether a path under the root takes part in synchronization."""

    def __init__(self, root: Path, patterns: Iterable[str] = ()) -> None:
        self.root = root
        self.spec = PathSpec.from_lines("gitwildmatch", [*DEFAULT_IGNORE_PATTERNS, *patterns])

    def is_ignored(self, path: Path) -> bool:
        try:
            rel = Path(os.path.abspath(path)).relative_to(self.root)
        except ValueError:
            return True
        if not rel.parts:
            return True
        if any(part.startswith(METADATA_PREFIXES) for part in rel.parts):
            return True
        return self.spec.match_file(rel.as_posix())

    def walk(self, directory: Path) -> Iterable[Path]:
        """Yield every non-ignored regular file under *directory*."""
        for dirpath, dirnames, filenames in os.walk(directory):
            base = Path(dirpath)
            dirnames[:] = sorted(d for d in dirnames if not self.is_ignored(base / d))
            for name in sorted(filenames):
                path = base / name
                if not self.is_ignored(path) and path.is_file():
                    yield path


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: TreeWatcher) -> None:
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        loop = self.watcher.loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.watcher.dispatch, event)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass


def _signature(path: Path) -> tuple[int, int] | None:
    try:
        st = path.stat()
    except OSError:
        return None
    return (st.st_size, st.st_mtime_ns)


def _fspath(value: str | bytes) -> Path:
    return Path(os.fsdecode(value))


class TreeWatcher:
    """Watches ``root`` and forwards stable changes to a ``FileBridge``.

    Args:
        root: Synchronized root (resolved).
        bridge: Receives upserts and deletes.
        is_active: Events are dropped while this returns ``False``.
        ignore: Path filter.
        stabilize: Seconds a file must stay unchanged before it is read.
    """

    def __init__(
        self,
        root: Path,
        bridge: FileBridge,
        *,
        is_active: Callable[[], bool],
        ignore: IgnoreMatcher,
        stabilize: float = 0.5,
    ) -> None:
        self.root = root
        self.bridge = bridge
        self.is_active = is_active
        self.ignore = ignore
        self.stabilize = stabilize
        self.loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None
        self._pending: dict[Path, asyncio.TimerHandle] = {}

    def start(self) -> None:
        """Start watching.  Must be called from the engine's running loop."""
        self.loop = asyncio.get_running_loop()
        observer = Observer()
        observer.schedule(_Handler(self), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.debug("watching %s", self.root)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

    # -- event intake (loop thread) -----------------------------------------

    def dispatch(self, event: FileSystemEvent) -> None:
        src = _fspath(event.src_path)

        if event.event_type == "moved":
            dest = _fspath(event.dest_path)
            if event.is_directory:
                self._drop_tree(src)
                self._touch_tree(dest)
            else:
                self.touch(src)
                self.touch(dest)
            return

        if event.is_directory:
            if event.event_type == "deleted":
                self._drop_tree(src)
            elif event.event_type == "created":
                self._touch_tree(src)
            return

        if event.event_type in _CHANGE_EVENTS or event.event_type == "deleted":
            self.touch(src)

    def touch(self, path: Path) -> None:
        """Schedule (or re-arm) processing of *path* after it stabilizes."""
        if self.ignore.is_ignored(path):
            return
        self._arm(path, _signature(path))

    def _arm(self, path: Path, signature: tuple[int, int] | None) -> None:
        assert self.loop is not None
        handle = self._pending.pop(path, None)
        if handle is not None:
            handle.cancel()
        self._pending[path] = self.loop.call_later(self.stabilize, self._settle, path, signature)

    def _settle(self, path: Path, signature: tuple[int, int] | None) -> None:
        current = _signature(path)
        if current != signature:
            self._arm(path, current)
            return
        self._pending.pop(path, None)
        self.process(path)

    # -- hand-off to the bridge ---------------------------------------------

    def process(self, path: Path) -> None:
        """Push the current on-disk state of *path* into the document."""
        if not self.is_active():
            if path.is_file() and self.bridge.absorb_echo(path):
                logger.debug("echo absorbed before sync: %s", path)
            else:
                logger.debug("not synced yet; ignoring %s", path)
            return
        if path.is_file():
            self.bridge.on_local_change(path)
        elif not path.exists():
            self.bridge.on_local_delete(path)

    def _drop_tree(self, directory: Path) -> None:
        if self.ignore.is_ignored(directory):
            return
        for path in [p for p in self._pending if directory in p.parents]:
            self._pending.pop(path).cancel()
        if self.is_active():
            self.bridge.on_local_delete_tree(directory)

    def _touch_tree(self, directory: Path) -> None:
        if self.ignore.is_ignored(directory):
            return
        for path in self.ignore.walk(directory):
            self.touch(path)
