"""End-to-end: two engines on localhost bootstrap and then stay in sync."""

from __future__ import annotations

import asyncio
import time

import pytest

automerge = pytest.importorskip("automerge")

from treesync.core.ids import generate_topic_key  # noqa: E402
from treesync.sync.discovery import StaticDiscovery  # noqa: E402
from treesync.sync.engine import SyncEngine, SyncState  # noqa: E402
from treesync.sync.swarm import Swarm  # noqa: E402


async def wait_until(predicate, timeout: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


def read(path):
    try:
        return path.read_bytes()
    except OSError:
        return None


@pytest.fixture
def roots(tmp_path):
    a, b = tmp_path / "a", tmp_path / "b"
    a.mkdir()
    b.mkdir()
    return a.resolve(), b.resolve()


def make_engine(root, key, *, authoritative, peer_id, peers=()):
    swarm = Swarm(peer_id, host="127.0.0.1", discoveries=[StaticDiscovery(peers)])
    engine = SyncEngine(
        root,
        key,
        authoritative=authoritative,
        swarm=swarm,
        peer_id=peer_id,
        bootstrap_timeout=10.0,
        write_stabilize=0.05,
    )
    return swarm, engine


def test_bootstrap_then_live_edits(roots, run) -> None:
    root_a, root_b = roots
    (root_a / "seed.txt").write_bytes(b"seeded")
    (root_a / "docs").mkdir()
    (root_a / "docs" / "readme.md").write_bytes(b"# hi")
    key = generate_topic_key()

    async def scenario():
        swarm_a, engine_a = make_engine(root_a, key, authoritative=True, peer_id="peer_a")
        await swarm_a.listen()
        await engine_a.start()

        swarm_b, engine_b = make_engine(
            root_b, key, authoritative=False, peer_id="peer_b", peers=[f"127.0.0.1:{swarm_a.port}"]
        )
        await swarm_b.listen()
        await engine_b.start()
        try:
            assert await wait_until(engine_b.is_synced)
            assert read(root_b / "seed.txt") == b"seeded"
            assert read(root_b / "docs" / "readme.md") == b"# hi"

            # Let the watchers settle after the bootstrap writes.
            await asyncio.sleep(0.5)

            (root_a / "new.txt").write_bytes(b"from a")
            assert await wait_until(lambda: read(root_b / "new.txt") == b"from a")

            (root_b / "seed.txt").write_bytes(b"edited on b")
            assert await wait_until(lambda: read(root_a / "seed.txt") == b"edited on b")

            (root_a / "new.txt").unlink()
            assert await wait_until(lambda: not (root_b / "new.txt").exists())

            assert engine_a.state is SyncState.SYNCED
            assert set(engine_a.document.files()) == set(engine_b.document.files())
        finally:
            await engine_b.close()
            await engine_a.close()

    run(scenario(), timeout=60.0)
    assert not (root_a.parent / ".peer_a").exists()
    assert not (root_a.parent / ".peer_b").exists()
