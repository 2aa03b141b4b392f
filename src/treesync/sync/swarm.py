"""WebSocket swarm: one listening server, many topic sessions.

Peers dial ``ws://host:port/<discovery-key>?port=<listen-port>&peer=<id>``.
The server routes the connection to the session joined under that
discovery key and refuses unknown keys.  Sessions are independent: closing
one (e.g. a finished snapshot transfer) leaves the others running.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, Protocol
from urllib.parse import parse_qs, urlparse

import websockets

from treesync.core.ids import discovery_key
from treesync.core.messages import ControlMessage, encode_control

logger = logging.getLogger(__name__)

CLOSE_UNKNOWN_TOPIC = 4004


class SessionHandler(Protocol):
    def connection_opened(self, conn: PeerConnection) -> None: ...

    def frame_received(self, conn: PeerConnection, frame: str | bytes) -> None: ...

    def connection_closed(self, conn: PeerConnection) -> None: ...


class PeerConnection:
    """One live transport session with a remote peer.

    Outgoing frames go through an ordered outbox so callers on the loop can
    send without awaiting; frames leave in the order they were queued.
    """

    def __init__(
        self,
        websocket: Any,
        *,
        peer_id: str | None = None,
        address: str | None = None,
    ) -> None:
        self.websocket = websocket
        self.peer_id = peer_id
        self.address = address
        self.closed = False
        self._outbox: asyncio.Queue = asyncio.Queue()

    def send(self, frame: str | bytes) -> None:
        if not self.closed:
            self._outbox.put_nowait(frame)

    def send_control(self, message: ControlMessage) -> None:
        self.send(encode_control(message))

    def send_update(self, blob: bytes) -> None:
        self.send(bytes(blob))

    async def pump(self) -> None:
        """Drain the outbox onto the socket until cancelled or closed."""
        try:
            while True:
                frame = await self._outbox.get()
                await self.websocket.send(frame)
        except websockets.exceptions.ConnectionClosed:
            self.closed = True

    async def close(self) -> None:
        self.closed = True
        await self.websocket.close()

    def __repr__(self) -> str:
        return f"<PeerConnection {self.peer_id or '?'} @ {self.address or '?'}>"


class TopicSession:
    """Connections sharing one discovery key."""

    def __init__(self, swarm: Swarm, discovery_key: str, handler: SessionHandler) -> None:
        self.swarm = swarm
        self.discovery_key = discovery_key
        self.handler = handler
        self.connections: set[PeerConnection] = set()
        self.closed = False
        self._dialing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._connected = asyncio.Event()

    def peer_ids(self) -> set[str]:
        return {c.peer_id for c in self.connections if c.peer_id}

    async def flush(self) -> None:
        """Push this session's announcement out through every discovery backend."""
        for backend in self.swarm.discoveries:
            await backend.flush(self.discovery_key)

    async def wait_for_connection(self, timeout: float | None = None) -> PeerConnection:
        """Wait until at least one peer is connected and return it.

        Raises:
            asyncio.TimeoutError: If no peer connects within *timeout*.
        """
        return await asyncio.wait_for(self._first_connection(), timeout)

    async def _first_connection(self) -> PeerConnection:
        while True:
            await self._connected.wait()
            for conn in self.connections:
                if not conn.closed:
                    return conn
            # Woken by a connection that has already gone again.
            await asyncio.sleep(0.01)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.swarm._sessions.pop(self.discovery_key, None)
        for backend in self.swarm.discoveries:
            await backend.unsubscribe(self.discovery_key)
        for task in list(self._tasks):
            task.cancel()
        for conn in list(self.connections):
            try:
                await conn.close()
            except Exception as exc:
                logger.debug("error closing %r: %s", conn, exc)


class Swarm:
    """Listening server plus dialer for every joined topic."""

    def __init__(
        self,
        peer_id: str,
        *,
        host: str = "0.0.0.0",
        port: int = 0,
        discoveries: Iterable[Any] = (),
    ) -> None:
        self.peer_id = peer_id
        self.host = host
        self.port = port
        self.discoveries = list(discoveries)
        self._sessions: dict[str, TopicSession] = {}
        self._server: Any = None

    async def listen(self) -> None:
        """Start the WebSocket server and the discovery backends."""
        self._server = await websockets.serve(
            self._accept,
            self.host,
            self.port,
            max_size=None,
        )
        self.port = self._server.sockets[0].getsockname()[1]
        for backend in self.discoveries:
            await backend.start()
        logger.info("listening on ws://%s:%d", self.host, self.port)

    async def join(self, key: str, handler: SessionHandler, *, hints: Iterable[str] = ()) -> TopicSession:
        """Open a session for *key* (a topic key or snapshot locator, hex)."""
        dk = discovery_key(key)
        session = TopicSession(self, dk, handler)
        self._sessions[dk] = session
        for backend in self.discoveries:
            await backend.subscribe(dk, self.port, lambda address, peer, s=session: self.dial(s, address, peer))
        for address in hints:
            self.dial(session, address)
        return session

    def dial(self, session: TopicSession, address: str, peer_id: str | None = None) -> None:
        if session.closed or address in session._dialing:
            return
        if peer_id is not None and peer_id in session.peer_ids():
            return
        session._dialing.add(address)
        task = asyncio.create_task(self._dial(session, address))
        session._tasks.add(task)
        task.add_done_callback(session._tasks.discard)

    async def destroy(self) -> None:
        for session in list(self._sessions.values()):
            await session.close()
        for backend in self.discoveries:
            await backend.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    # -- connection plumbing --------------------------------------------------

    async def _dial(self, session: TopicSession, address: str) -> None:
        url = f"ws://{address}/{session.discovery_key}?port={self.port}&peer={self.peer_id}"
        try:
            async with websockets.connect(url, max_size=None) as websocket:
                await self._run(session, websocket, address=address)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            logger.debug("dial %s failed: %s", address, exc)
        finally:
            session._dialing.discard(address)

    async def _accept(self, websocket: Any, path: str | None = None) -> None:
        request = urlparse(path or _request_path(websocket))
        dk = request.path.strip("/")
        params = parse_qs(request.query)
        remote_peer = params.get("peer", [None])[0]
        remote_port = params.get("port", [None])[0]

        session = self._sessions.get(dk)
        if session is None or session.closed or remote_peer == self.peer_id:
            await websocket.close(CLOSE_UNKNOWN_TOPIC, "unknown topic")
            return

        address = None
        if remote_port:
            host = websocket.remote_address[0]
            if ":" in host:
                host = f"[{host}]"
            address = f"{host}:{remote_port}"
        await self._run(session, websocket, peer_id=remote_peer, address=address)

    async def _run(
        self,
        session: TopicSession,
        websocket: Any,
        *,
        peer_id: str | None = None,
        address: str | None = None,
    ) -> None:
        conn = PeerConnection(websocket, peer_id=peer_id, address=address)
        session.connections.add(conn)
        session._connected.set()
        pump = asyncio.create_task(conn.pump())
        logger.info("peer connected: %r", conn)
        try:
            session.handler.connection_opened(conn)
            async for message in websocket:
                try:
                    session.handler.frame_received(conn, message)
                except Exception:
                    logger.exception("frame handler failed for %r", conn)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            conn.closed = True
            pump.cancel()
            session.connections.discard(conn)
            if not session.connections:
                session._connected.clear()
            session.handler.connection_closed(conn)
            logger.info("peer disconnected: %r", conn)


def _request_path(websocket: Any) -> str:
    request = getattr(websocket, "request", None)
    if request is not None:
        return request.path
    return getattr(websocket, "path", "") or ""
