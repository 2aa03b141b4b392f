"""Tests for sync/bridge.py: files <-> document in both directions."""

from __future__ import annotations

import pytest

automerge = pytest.importorskip("automerge")

from treesync.core.ledger import HashLedger, sha256_hex  # noqa: E402
from treesync.sync.bridge import FileBridge  # noqa: E402
from treesync.sync.document import Origin, ReplicatedDocument  # noqa: E402


@pytest.fixture
def bridge(sync_root):
    b = FileBridge(sync_root, ReplicatedDocument(), HashLedger())
    b.attach()
    return b


@pytest.fixture
def remote_peer_edit(converge):
    """Apply a mutation on a separate replica and sync it into the bridge's document."""

    def _edit(bridge, mutate) -> None:
        other = ReplicatedDocument()
        converge(bridge.document, other)
        mutate(other)
        converge(other, bridge.document)

    return _edit


class TestRemoteToDisk:
    def test_remote_upsert_writes_file(self, bridge, sync_root, remote_peer_edit) -> None:
        remote_peer_edit(bridge, lambda d: d.set_file("/dir/a.txt", b"hello", 1, Origin.LOCAL))

        assert (sync_root / "dir" / "a.txt").read_bytes() == b"hello"
        assert bridge.ledger.pending("/dir/a.txt") == {sha256_hex(b"hello")}

    def test_remote_delete_removes_file(self, bridge, sync_root, remote_peer_edit) -> None:
        remote_peer_edit(bridge, lambda d: d.set_file("/a.txt", b"x", 1, Origin.LOCAL))
        remote_peer_edit(bridge, lambda d: d.delete_file("/a.txt", Origin.LOCAL))

        assert not (sync_root / "a.txt").exists()

    def test_remote_delete_of_missing_file_tolerated(self, bridge, sync_root, remote_peer_edit) -> None:
        remote_peer_edit(bridge, lambda d: d.set_file("/a.txt", b"x", 1, Origin.LOCAL))
        (sync_root / "a.txt").unlink()
        remote_peer_edit(bridge, lambda d: d.delete_file("/a.txt", Origin.LOCAL))

        assert "/a.txt" not in bridge.document

    def test_identical_content_not_rewritten(self, bridge, sync_root, remote_peer_edit) -> None:
        (sync_root / "a.txt").write_bytes(b"same")
        remote_peer_edit(bridge, lambda d: d.set_file("/a.txt", b"same", 1, Origin.LOCAL))

        assert "/a.txt" not in bridge.ledger

    def test_local_origin_batches_not_applied(self, bridge, sync_root) -> None:
        bridge.document.set_file("/ghost.txt", b"x", 1, Origin.LOCAL)
        assert not (sync_root / "ghost.txt").exists()

    def test_escaping_key_is_refused(self, bridge, sync_root, remote_peer_edit) -> None:
        remote_peer_edit(bridge, lambda d: d.set_file("/../escape.txt", b"x", 1, Origin.LOCAL))
        assert not (sync_root.parent / "escape.txt").exists()


class TestDiskToRemote:
    def test_local_change_enters_document(self, bridge, sync_root) -> None:
        path = sync_root / "a.txt"
        path.write_bytes(b"mine")

        assert bridge.on_local_change(path) is True
        record = bridge.document.get_file("/a.txt")
        assert record.content == b"mine"
        assert record.timestamp > 0

    def test_echo_of_remote_write_suppressed(self, bridge, sync_root, remote_peer_edit) -> None:
        remote_peer_edit(bridge, lambda d: d.set_file("/a.txt", b"theirs", 1, Origin.LOCAL))
        updates = []
        bridge.document.on_update(lambda: updates.append(1))

        assert bridge.on_local_change(sync_root / "a.txt") is False
        assert updates == []
        assert "/a.txt" not in bridge.ledger

    def test_new_content_after_remote_write_propagates(self, bridge, sync_root, remote_peer_edit) -> None:
        remote_peer_edit(bridge, lambda d: d.set_file("/a.txt", b"theirs", 1, Origin.LOCAL))
        (sync_root / "a.txt").write_bytes(b"edited")

        assert bridge.on_local_change(sync_root / "a.txt") is True
        assert bridge.document.get_file("/a.txt").content == b"edited"

    def test_unreadable_file_skipped(self, bridge, sync_root) -> None:
        assert bridge.on_local_change(sync_root / "vanished.txt") is False
        assert len(bridge.document) == 0

    def test_local_delete(self, bridge, sync_root) -> None:
        path = sync_root / "a.txt"
        path.write_bytes(b"x")
        bridge.on_local_change(path)
        path.unlink()

        assert bridge.on_local_delete(path) is True
        assert bridge.on_local_delete(path) is False

    def test_local_delete_tree(self, bridge, sync_root) -> None:
        (sync_root / "d" / "e").mkdir(parents=True)
        for rel in ("d/one", "d/e/two", "other"):
            (sync_root / rel).write_bytes(rel.encode())
            bridge.on_local_change(sync_root / rel)

        assert bridge.on_local_delete_tree(sync_root / "d") == 2
        assert set(bridge.document.files()) == {"/other"}

    def test_absorb_echo_consumes_matching_entry(self, bridge, sync_root) -> None:
        path = sync_root / "a.txt"
        path.write_bytes(b"snap")
        bridge.ledger.record("/a.txt", sha256_hex(b"snap"))

        assert bridge.absorb_echo(path) is True
        assert "/a.txt" not in bridge.ledger
        assert "/a.txt" not in bridge.document

    def test_absorb_echo_leaves_other_content_alone(self, bridge, sync_root) -> None:
        path = sync_root / "a.txt"
        path.write_bytes(b"mine")
        bridge.ledger.record("/a.txt", sha256_hex(b"snap"))

        assert bridge.absorb_echo(path) is False
        assert bridge.absorb_echo(sync_root / "missing.txt") is False
        assert bridge.ledger.pending("/a.txt") == {sha256_hex(b"snap")}
