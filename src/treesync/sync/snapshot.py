"""One-shot, content-addressed snapshot transfer used to bootstrap a peer.

The sender freezes its tree into a blob store (``<scratch>/blobs/<sha256>``)
plus a versioned manifest.  The manifest's SHA-256 is the snapshot
locator: the receiver joins a swarm session keyed by the locator, checks
the manifest against it, and verifies each blob against its hash before
writing it into its own tree.

Wire protocol (JSON requests, JSON or binary replies)::

    -> {"op": "manifest"}          <- {"op": "manifest", "manifest": {...}}
    -> {"op": "blob", "hash": h}   <- <blob bytes> | {"op": "error", ...}
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from treesync.core.errors import FilesystemError, TransferError
from treesync.core.ledger import HashLedger, sha256_hex
from treesync.storage.fs import atomic_write, file_matches, to_key, to_path, write_file
from treesync.sync.swarm import PeerConnection, Swarm, TopicSession
from treesync.sync.watch import IgnoreMatcher

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def canonical_json(value: object) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


def manifest_locator(manifest: dict) -> str:
    """The locator of a snapshot is the digest of its manifest."""
    return sha256_hex(canonical_json(manifest))


def build_manifest(root: Path, ignore: IgnoreMatcher, blob_dir: Path) -> dict:
    """Copy every synchronized file under *root* into *blob_dir* and describe it."""
    blob_dir.mkdir(parents=True, exist_ok=True)
    files: dict[str, dict] = {}
    for path in ignore.walk(root):
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning("snapshot skips %s: %s", path, exc)
            continue
        digest = sha256_hex(data)
        blob = blob_dir / digest
        if not blob.exists():
            atomic_write(blob, data)
        files[to_key(root, path)] = {"hash": digest, "size": len(data)}
    return {"version": MANIFEST_VERSION, "files": files}


@dataclass
class SnapshotHandle:
    """A published snapshot and the session serving it."""

    locator: str
    manifest: dict
    blob_dir: Path
    session: TopicSession | None = None
    closed: bool = False
    hashes: frozenset[str] = field(default_factory=frozenset)


class _SnapshotServer:
    """Session handler answering manifest and blob requests."""

    def __init__(self, handle: SnapshotHandle) -> None:
        self.handle = handle

    def connection_opened(self, conn: PeerConnection) -> None:
        logger.info("snapshot %s: receiver connected", self.handle.locator[:12])

    def frame_received(self, conn: PeerConnection, frame: str | bytes) -> None:
        try:
            request = json.loads(frame)
            op = request["op"]
        except (ValueError, KeyError, TypeError):
            conn.send(json.dumps({"op": "error", "error": "bad request"}))
            return

        if op == "manifest":
            conn.send(json.dumps({"op": "manifest", "manifest": self.handle.manifest}))
        elif op == "blob" and request.get("hash") in self.handle.hashes:
            try:
                conn.send((self.handle.blob_dir / request["hash"]).read_bytes())
            except OSError as exc:
                conn.send(json.dumps({"op": "error", "error": str(exc)}))
        else:
            conn.send(json.dumps({"op": "error", "error": f"unknown request {op!r}"}))

    def connection_closed(self, conn: PeerConnection) -> None:
        pass


class _Disconnected(Exception):
    pass


class _SnapshotClient:
    """Session handler collecting replies per connection."""

    def __init__(self) -> None:
        self.replies: dict[PeerConnection, asyncio.Queue] = {}

    def _queue(self, conn: PeerConnection) -> asyncio.Queue:
        return self.replies.setdefault(conn, asyncio.Queue())

    def connection_opened(self, conn: PeerConnection) -> None:
        self._queue(conn)

    def frame_received(self, conn: PeerConnection, frame: str | bytes) -> None:
        self._queue(conn).put_nowait(frame)

    def connection_closed(self, conn: PeerConnection) -> None:
        self._queue(conn).put_nowait(None)

    async def request(self, conn: PeerConnection, request: dict) -> str | bytes:
        conn.send(json.dumps(request))
        reply = await self._queue(conn).get()
        if reply is None:
            raise _Disconnected()
        return reply


class SnapshotTransfer:
    """Publishes and fetches snapshots over a swarm.

    Args:
        swarm: Transport; each publish/fetch opens and closes its own session.
        cache_dir: Scratch directory for the blob store, removed on close.
        ignore: Same filter the watcher uses, so snapshots and live sync agree.
        timeout: Seconds to wait for the other side to show up.
    """

    def __init__(self, swarm: Swarm, cache_dir: Path, ignore: IgnoreMatcher, timeout: float = 120.0) -> None:
        self.swarm = swarm
        self.cache_dir = cache_dir
        self.ignore = ignore
        self.timeout = timeout

    # -- sender -------------------------------------------------------------

    async def publish(self, root: Path) -> SnapshotHandle:
        """Freeze *root*, open it for replication, and announce it."""
        blob_dir = self.cache_dir / "blobs"
        manifest = await asyncio.to_thread(build_manifest, root, self.ignore, blob_dir)
        handle = SnapshotHandle(
            locator=manifest_locator(manifest),
            manifest=manifest,
            blob_dir=blob_dir,
            hashes=frozenset(entry["hash"] for entry in manifest["files"].values()),
        )
        try:
            handle.session = await self.swarm.join(handle.locator, _SnapshotServer(handle))
            await handle.session.flush()
        except BaseException:
            await self.close(handle)
            raise
        logger.info(
            "published snapshot %s (%d files)", handle.locator[:12], len(manifest["files"])
        )
        return handle

    async def close(self, handle: SnapshotHandle) -> None:
        """Stop serving *handle* and drop the blob store.  Safe to repeat."""
        if handle.closed:
            return
        handle.closed = True
        try:
            if handle.session is not None:
                await handle.session.close()
        finally:
            self.remove_cache()

    def remove_cache(self) -> None:
        shutil.rmtree(self.cache_dir, ignore_errors=True)

    # -- receiver -------------------------------------------------------------

    async def fetch(
        self,
        locator: str,
        root: Path,
        ledger: HashLedger,
        *,
        hints: Iterable[str] = (),
    ) -> list[str]:
        """Pull snapshot *locator* into *root*; return the keys written.

        Files already holding the snapshot's bytes are left alone.  Every
        written file's hash goes into *ledger* so the watcher's upcoming
        event for it is recognised as our own write.

        Raises:
            TransferError: No sender was found within the timeout, the
                session broke, or the data failed verification.
        """
        client = _SnapshotClient()
        hints = list(hints)
        session = await self.swarm.join(locator, client, hints=hints)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TransferError(f"no sender found for snapshot {locator[:12]}")
                try:
                    conn = await session.wait_for_connection(remaining)
                except asyncio.TimeoutError:
                    raise TransferError(f"no sender found for snapshot {locator[:12]}") from None
                try:
                    written = await self._pull(client, conn, locator, root, ledger)
                except _Disconnected:
                    logger.debug("snapshot source %r went away; looking for another", conn)
                    await asyncio.sleep(0.25)
                    for address in hints:
                        self.swarm.dial(session, address)
                    continue
                logger.info("fetched snapshot %s: %d files written", locator[:12], len(written))
                return written
        finally:
            await session.close()
            self.remove_cache()

    async def _pull(
        self,
        client: _SnapshotClient,
        conn: PeerConnection,
        locator: str,
        root: Path,
        ledger: HashLedger,
    ) -> list[str]:
        reply = await client.request(conn, {"op": "manifest"})
        try:
            manifest = json.loads(reply)["manifest"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TransferError(f"malformed manifest reply: {exc}") from exc
        if manifest_locator(manifest) != locator:
            raise TransferError("manifest does not match snapshot locator")
        if not isinstance(manifest, dict) or manifest.get("version") != MANIFEST_VERSION:
            raise TransferError("unsupported snapshot manifest")
        digests = _manifest_digests(manifest)

        written: list[str] = []
        for key in sorted(digests):
            digest = digests[key]
            try:
                path = to_path(root, key)
            except ValueError as exc:
                raise TransferError(str(exc)) from exc
            if file_matches(path, digest):
                continue

            blob = await client.request(conn, {"op": "blob", "hash": digest})
            if isinstance(blob, str):
                raise TransferError(f"sender refused blob for {key}: {blob}")
            if sha256_hex(blob) != digest:
                raise TransferError(f"blob for {key} failed verification")

            try:
                write_file(path, key, blob)
            except FilesystemError as exc:
                logger.error("snapshot cannot write %s: %s", key, exc)
                continue
            ledger.record(key, digest)
            written.append(key)
        return written


def _manifest_digests(manifest: dict) -> dict[str, str]:
    """Map each manifest key to its blob hash, rejecting malformed entries."""
    files = manifest.get("files")
    if not isinstance(files, dict):
        raise TransferError("manifest has no file table")
    digests: dict[str, str] = {}
    for key, entry in files.items():
        digest = entry.get("hash") if isinstance(entry, dict) else None
        if not isinstance(digest, str) or not _SHA256_RE.match(digest):
            raise TransferError(f"malformed manifest entry for {key!r}")
        digests[key] = digest
    return digests
