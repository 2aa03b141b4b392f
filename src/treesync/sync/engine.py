"""Sync engine: owns the per-process state and runs the bootstrap handshake.

State machine (per process)::

    UNSYNCED --mirror-proposal/approve--> SYNCING --drive-key/fetch--> SYNCED

A peer that started without a topic key is authoritative and starts
``SYNCED``.  Until a peer is ``SYNCED`` every incoming update blob is
queued; the queue is merged in arrival order right after the snapshot
fetch completes, in the same loop step that flips the state.

A ``SYNCED`` peer offers its snapshot (``mirror-proposal``) to every new
connection while it is not already serving one; approvals that arrive
while it is busy wait their turn.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from filelock import FileLock

from treesync.core.errors import MergeError, ProtocolError, TransferError, TreesyncError
from treesync.core.ledger import HashLedger
from treesync.core.messages import (
    ControlMessage,
    DriveKey,
    MirrorApproval,
    MirrorComplete,
    MirrorDenial,
    MirrorProposal,
    parse_frame,
)
from treesync.storage.fs import scratch_dir
from treesync.sync.bridge import FileBridge
from treesync.sync.document import PeerState, ReplicatedDocument
from treesync.sync.snapshot import SnapshotHandle, SnapshotTransfer
from treesync.sync.swarm import PeerConnection, Swarm, TopicSession
from treesync.sync.watch import IgnoreMatcher, TreeWatcher

logger = logging.getLogger(__name__)


class SyncState(enum.Enum):
    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"


class _Serving:
    """Sender-side record of the bootstrap currently being served."""

    def __init__(self, conn: PeerConnection) -> None:
        self.conn = conn
        self.handle: SnapshotHandle | None = None
        self.timer: asyncio.TimerHandle | None = None


class SyncEngine:
    """Single owner of the document, hash ledger, update queue and handshake state.

    All callbacks (swarm, watcher, document observer) run on one asyncio
    loop, so nothing here needs locking.
    """

    def __init__(
        self,
        root: Path,
        topic_key: str,
        *,
        authoritative: bool,
        swarm: Swarm,
        peer_id: str,
        ignore_patterns: list[str] | None = None,
        bootstrap_timeout: float = 120.0,
        write_stabilize: float = 0.5,
        transfer: Any = None,
        lock: FileLock | None = None,
    ) -> None:
        self.root = root
        self.topic_key = topic_key
        self.swarm = swarm
        self.peer_id = peer_id
        self.bootstrap_timeout = bootstrap_timeout
        self.lock = lock

        self.state = SyncState.SYNCED if authoritative else SyncState.UNSYNCED
        self.ledger = HashLedger()
        self.document = ReplicatedDocument()
        self.buffered: deque[tuple[PeerState, bytes]] = deque()
        self._peer_states: dict[PeerConnection, PeerState] = {}
        self.connections: set[PeerConnection] = set()
        self.session: TopicSession | None = None

        self.ignore = IgnoreMatcher(root, ignore_patterns or [])
        self.bridge = FileBridge(root, self.document, self.ledger)
        self.bridge.attach()
        self.document.on_update(self._broadcast)
        self.watcher = TreeWatcher(
            root,
            self.bridge,
            is_active=self.is_synced,
            ignore=self.ignore,
            stabilize=write_stabilize,
        )
        self.transfer = transfer or SnapshotTransfer(
            swarm, scratch_dir(root, peer_id), self.ignore, timeout=bootstrap_timeout
        )

        self._serving: _Serving | None = None
        self._waiting: deque[PeerConnection] = deque()
        self._bootstrap_peer: PeerConnection | None = None
        self._approval_timer: asyncio.TimerHandle | None = None
        self._fetching = False
        self._tasks: set[asyncio.Task] = set()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def is_synced(self) -> bool:
        return self.state is SyncState.SYNCED

    async def start(self) -> None:
        """Join the topic and begin watching the root."""
        self.session = await self.swarm.join(self.topic_key, self)
        await self.session.flush()
        self.watcher.start()
        logger.info("engine started (%s) on %s", self.state.value, self.root)

    async def close(self) -> None:
        """Stop watching, release bootstrap resources, leave the swarm."""
        self.watcher.stop()
        if self._approval_timer is not None:
            self._approval_timer.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        try:
            if self._serving is not None:
                await self._release_serving()
            await self.swarm.destroy()
        finally:
            self.transfer.remove_cache()
            if self.lock is not None:
                self.lock.release()

    async def wait_idle(self) -> None:
        """Wait for in-flight bootstrap work (publish/fetch) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("bootstrap task failed", exc_info=task.exception())

    # -----------------------------------------------------------------------
    # Session handler
    # -----------------------------------------------------------------------

    def connection_opened(self, conn: PeerConnection) -> None:
        self.connections.add(conn)
        # Open the sync exchange first so the peer learns our history and
        # its later edits causally follow ours.
        self._peer_states[conn] = self.document.new_peer_state()
        self._sync_peer(conn)
        if self.state is SyncState.SYNCED and self._serving is None:
            conn.send_control(MirrorProposal())

    def connection_closed(self, conn: PeerConnection) -> None:
        self.connections.discard(conn)
        self._peer_states.pop(conn, None)
        if conn in self._waiting:
            self._waiting.remove(conn)

        if conn is self._bootstrap_peer and not self._fetching:
            logger.warning("bootstrap peer %r left before sending a snapshot", conn)
            self._reset_bootstrap()

        if self._serving is not None and self._serving.conn is conn:
            logger.warning("receiver %r left mid-bootstrap", conn)
            self._spawn(self._finish_serving())

    def frame_received(self, conn: PeerConnection, frame: str | bytes) -> None:
        try:
            message = parse_frame(frame)
        except ProtocolError as exc:
            logger.warning("ignoring control message from %r: %s", conn, exc)
            return

        if message is None:
            blob = frame.encode("utf-8") if isinstance(frame, str) else bytes(frame)
            self.receive_update(conn, blob)
            return

        logger.debug("received %s from %r in state %s", message.type, conn, self.state.value)
        if self.state is SyncState.SYNCED:
            self._handle_synced(conn, message)
        else:
            self._handle_unsynced(conn, message)

    # -----------------------------------------------------------------------
    # Updates
    # -----------------------------------------------------------------------

    def receive_update(self, conn: PeerConnection, blob: bytes) -> None:
        """Merge *blob* now if synced, otherwise queue it."""
        peer = self._peer_state(conn)
        if self.state is SyncState.SYNCED:
            self._merge(peer, blob)
            self._broadcast()
        else:
            self.buffered.append((peer, blob))

    def _peer_state(self, conn: PeerConnection) -> PeerState:
        peer = self._peer_states.get(conn)
        if peer is None:
            peer = self._peer_states[conn] = self.document.new_peer_state()
        return peer

    def _merge(self, peer: PeerState, blob: bytes) -> None:
        try:
            self.document.merge_update(blob, peer)
        except MergeError as exc:
            logger.warning("dropping update: %s", exc)

    def _drain(self) -> None:
        count = len(self.buffered)
        while self.buffered:
            self._merge(*self.buffered.popleft())
        if count:
            logger.debug("merged %d buffered updates", count)
            self._broadcast()

    def _broadcast(self) -> None:
        """Send every connected peer the changes it has not acknowledged."""
        for conn in list(self.connections):
            self._sync_peer(conn)

    def _sync_peer(self, conn: PeerConnection) -> None:
        blob = self.document.encode_update(self._peer_state(conn))
        if blob is not None:
            conn.send_update(blob)

    # -----------------------------------------------------------------------
    # Handshake: sender side
    # -----------------------------------------------------------------------

    def _handle_synced(self, conn: PeerConnection, message: ControlMessage) -> None:
        if isinstance(message, MirrorApproval):
            if self._serving is None:
                self._start_serving(conn)
            elif conn is not self._serving.conn and conn not in self._waiting:
                self._waiting.append(conn)
        elif isinstance(message, MirrorComplete):
            if self._serving is not None and self._serving.conn is conn:
                self._spawn(self._finish_serving())
            else:
                logger.warning("unexpected mirror-complete from %r", conn)
        elif isinstance(message, MirrorDenial):
            logger.info("peer %r is busy bootstrapping elsewhere", conn)
        elif isinstance(message, MirrorProposal):
            logger.debug("already synced; ignoring proposal from %r", conn)
        else:
            logger.warning("unexpected %s from %r while synced", message.type, conn)

    def _start_serving(self, conn: PeerConnection) -> None:
        serving = _Serving(conn)
        self._serving = serving
        serving.timer = asyncio.get_running_loop().call_later(
            self.bootstrap_timeout, self._serving_timed_out, serving
        )
        self._spawn(self._serve(serving))

    async def _serve(self, serving: _Serving) -> None:
        logger.info("mirroring directory to %r", serving.conn)
        try:
            handle = await self.transfer.publish(self.root)
        except (TreesyncError, OSError) as exc:
            logger.error("snapshot publish failed: %s", exc)
            if self._serving is serving:
                await self._finish_serving()
            return

        if self._serving is not serving:
            await self.transfer.close(handle)
            return
        serving.handle = handle
        serving.conn.send_control(DriveKey(locator=handle.locator))

    def _serving_timed_out(self, serving: _Serving) -> None:
        if self._serving is not serving:
            return
        logger.warning("bootstrap of %r timed out", serving.conn)
        self._spawn(self._finish_serving(repropose=True))

    async def _release_serving(self) -> None:
        serving = self._serving
        if serving is None:
            return
        self._serving = None
        if serving.timer is not None:
            serving.timer.cancel()
        if serving.handle is not None:
            try:
                await self.transfer.close(serving.handle)
            except Exception as exc:
                logger.error("error releasing snapshot session: %s", exc)

    async def _finish_serving(self, *, repropose: bool = False) -> None:
        serving = self._serving
        await self._release_serving()
        self._drain()
        if repropose and serving is not None and not serving.conn.closed:
            serving.conn.send_control(MirrorProposal())
        self._serve_next()

    def _serve_next(self) -> None:
        while self._waiting and self._serving is None:
            conn = self._waiting.popleft()
            if not conn.closed:
                self._start_serving(conn)

    # -----------------------------------------------------------------------
    # Handshake: receiver side
    # -----------------------------------------------------------------------

    def _handle_unsynced(self, conn: PeerConnection, message: ControlMessage) -> None:
        if isinstance(message, MirrorProposal):
            if self.state is SyncState.SYNCING:
                conn.send_control(MirrorDenial())
                return
            conn.send_control(MirrorApproval())
            self.state = SyncState.SYNCING
            self._bootstrap_peer = conn
            self._approval_timer = asyncio.get_running_loop().call_later(
                self.bootstrap_timeout, self._approval_timed_out, conn
            )
        elif isinstance(message, DriveKey):
            if conn is not self._bootstrap_peer:
                logger.warning("ignoring drive-key from %r: not our bootstrap peer", conn)
                return
            if self._fetching:
                logger.warning("ignoring duplicate drive-key from %r", conn)
                return
            self._fetching = True
            self._cancel_approval_timer()
            self._spawn(self._bootstrap(conn, message.locator))
        else:
            logger.warning("unexpected %s from %r while %s", message.type, conn, self.state.value)

    async def _bootstrap(self, conn: PeerConnection, locator: str) -> None:
        logger.info("mirroring directory from %r", conn)
        hints = [conn.address] if conn.address else []
        written = None
        try:
            written = await asyncio.wait_for(
                self.transfer.fetch(locator, self.root, self.ledger, hints=hints),
                self.bootstrap_timeout,
            )
        except (TransferError, asyncio.TimeoutError, OSError) as exc:
            logger.error("snapshot transfer failed: %s", str(exc) or "timed out")
        finally:
            if written is None:
                # Failed, cancelled or crashed: accept the next proposal.
                self._fetching = False
                self._reset_bootstrap()
        if written is None:
            return

        conn.send_control(MirrorComplete())
        self._fetching = False
        self._bootstrap_peer = None
        self._drain()
        self.state = SyncState.SYNCED
        logger.info("synchronized; %d files fetched", len(written))

    def _approval_timed_out(self, conn: PeerConnection) -> None:
        self._approval_timer = None
        if self._bootstrap_peer is conn and not self._fetching:
            logger.warning("no snapshot offered by %r in time", conn)
            self._reset_bootstrap()

    def _cancel_approval_timer(self) -> None:
        if self._approval_timer is not None:
            self._approval_timer.cancel()
            self._approval_timer = None

    def _reset_bootstrap(self) -> None:
        """Back to ``UNSYNCED``; the update queue is kept for the next attempt."""
        self._cancel_approval_timer()
        self._bootstrap_peer = None
        if self.state is SyncState.SYNCING:
            self.state = SyncState.UNSYNCED
