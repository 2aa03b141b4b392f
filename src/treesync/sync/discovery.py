"""Peer discovery backends for the swarm.

A backend learns where other peers serving a discovery key listen and
reports them through a ``found(address, peer_id)`` callback.  Two backends
ship: a static peer list and LAN broadcast announcements.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

FoundCallback = Callable[[str, "str | None"], None]

DEFAULT_LAN_PORT = 47913


class StaticDiscovery:
    """Reports a fixed list of ``host:port`` addresses for every topic."""

    def __init__(self, peers: Iterable[str] = ()) -> None:
        self.peers = [p for p in peers if p]

    async def start(self) -> None:
        pass

    async def subscribe(self, discovery_key: str, port: int, found: FoundCallback) -> None:
        for address in self.peers:
            found(address, None)

    async def flush(self, discovery_key: str) -> None:
        pass

    async def unsubscribe(self, discovery_key: str) -> None:
        pass

    async def close(self) -> None:
        pass


class _AnnounceProtocol(asyncio.DatagramProtocol):
    def __init__(self, discovery: LanDiscovery) -> None:
        self.discovery = discovery

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.discovery.announcement_received(data, addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.debug("lan discovery socket error: %s", exc)


class LanDiscovery:
    """Announces joined discovery keys by UDP broadcast on the local network.

    Announcements are ``{"dk": ..., "peer": ..., "port": ...}`` JSON
    datagrams, repeated every *interval* seconds.  When two peers share a
    key, only the one with the smaller peer id reports the other, so each
    pair ends up with a single connection.
    """

    def __init__(
        self,
        peer_id: str,
        *,
        port: int = DEFAULT_LAN_PORT,
        interval: float = 5.0,
        broadcast_address: str = "255.255.255.255",
    ) -> None:
        self.peer_id = peer_id
        self.port = port
        self.interval = interval
        self.broadcast_address = broadcast_address
        self._topics: dict[str, tuple[int, FoundCallback]] = {}
        self._transport: asyncio.DatagramTransport | None = None
        self._ticker: asyncio.Task | None = None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        options: dict = {"allow_broadcast": True}
        if hasattr(socket, "SO_REUSEPORT"):
            options["reuse_port"] = True
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _AnnounceProtocol(self),
                local_addr=("0.0.0.0", self.port),
                **options,
            )
        except OSError as exc:
            logger.warning("LAN discovery unavailable on udp/%d: %s", self.port, exc)
            return
        self._transport = transport
        self._ticker = asyncio.create_task(self._announce_forever())

    async def subscribe(self, discovery_key: str, port: int, found: FoundCallback) -> None:
        self._topics[discovery_key] = (port, found)
        self._announce(discovery_key)

    async def flush(self, discovery_key: str) -> None:
        self._announce(discovery_key)

    async def unsubscribe(self, discovery_key: str) -> None:
        self._topics.pop(discovery_key, None)

    async def close(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._topics.clear()

    def announcement_received(self, data: bytes, host: str) -> None:
        try:
            record = json.loads(data)
            dk = record["dk"]
            peer = record["peer"]
            port = int(record["port"])
        except (ValueError, KeyError, TypeError):
            return
        entry = self._topics.get(dk)
        if entry is None or peer == self.peer_id:
            return
        if self.peer_id < peer:
            entry[1](f"{host}:{port}", peer)

    def _announce(self, discovery_key: str) -> None:
        entry = self._topics.get(discovery_key)
        if self._transport is None or entry is None:
            return
        payload = json.dumps({"dk": discovery_key, "peer": self.peer_id, "port": entry[0]})
        self._transport.sendto(payload.encode(), (self.broadcast_address, self.port))

    async def _announce_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            for dk in list(self._topics):
                self._announce(dk)
