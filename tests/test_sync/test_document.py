"""Tests for sync/document.py: the Automerge-backed replicated tree."""

from __future__ import annotations

import pytest

automerge = pytest.importorskip("automerge")

from treesync.core.errors import MergeError  # noqa: E402
from treesync.sync.document import FileRecord, Origin, ReplicatedDocument  # noqa: E402


@pytest.fixture
def doc() -> ReplicatedDocument:
    return ReplicatedDocument()


class TestLocalMutations:
    def test_set_and_get(self, doc) -> None:
        doc.set_file("/a.txt", b"hello", 1000, Origin.LOCAL)
        assert doc.get_file("/a.txt") == FileRecord(content=b"hello", timestamp=1000)

    def test_overwrite(self, doc) -> None:
        doc.set_file("/a.txt", b"one", 1, Origin.LOCAL)
        doc.set_file("/a.txt", b"two", 2, Origin.LOCAL)
        assert doc.get_file("/a.txt").content == b"two"

    def test_binary_content(self, doc) -> None:
        payload = bytes(range(256))
        doc.set_file("/bin/blob", payload, 1, Origin.LOCAL)
        assert doc.get_file("/bin/blob").content == payload

    def test_delete(self, doc) -> None:
        doc.set_file("/a.txt", b"x", 1, Origin.LOCAL)
        assert doc.delete_file("/a.txt", Origin.LOCAL) is True
        assert "/a.txt" not in doc

    def test_delete_absent_is_noop(self, doc) -> None:
        updates = []
        doc.on_update(lambda: updates.append(1))
        assert doc.delete_file("/missing", Origin.LOCAL) is False
        assert updates == []

    def test_update_emitted_per_change(self, doc) -> None:
        updates = []
        doc.on_update(lambda: updates.append(1))
        doc.set_file("/a.txt", b"1", 1, Origin.LOCAL)
        doc.set_file("/b.txt", b"2", 2, Origin.LOCAL)
        assert len(updates) == 2


class TestObservers:
    def test_local_changes_tagged_local(self, doc) -> None:
        seen = []
        doc.observe(lambda origin, changes: seen.append((origin, changes)))
        doc.set_file("/a.txt", b"x", 1, Origin.LOCAL)

        assert len(seen) == 1
        origin, changes = seen[0]
        assert origin is Origin.LOCAL
        assert [(c.path, c.action) for c in changes] == [("/a.txt", "upsert")]

    def test_merge_reports_remote_upserts_and_deletes(self, converge) -> None:
        a, b = ReplicatedDocument(), ReplicatedDocument()
        a.set_file("/keep.txt", b"k", 1, Origin.LOCAL)
        a.set_file("/gone.txt", b"g", 1, Origin.LOCAL)
        converge(a, b)

        seen = []
        b.observe(lambda origin, changes: seen.append((origin, changes)))
        a.delete_file("/gone.txt", Origin.LOCAL)
        a.set_file("/keep.txt", b"k2", 2, Origin.LOCAL)
        converge(a, b)

        assert {origin for origin, _ in seen} == {Origin.REMOTE}
        by_path = {c.path: c for _, changes in seen for c in changes}
        assert by_path["/gone.txt"].action == "delete"
        assert by_path["/gone.txt"].record is None
        assert by_path["/keep.txt"].action == "upsert"
        assert by_path["/keep.txt"].record.content == b"k2"

    def test_failing_observer_does_not_break_mutation(self, doc) -> None:
        def boom(origin, changes):
            raise RuntimeError("observer bug")

        doc.observe(boom)
        doc.set_file("/a.txt", b"x", 1, Origin.LOCAL)
        assert "/a.txt" in doc


class TestMerge:
    def test_repeated_message_is_idempotent(self) -> None:
        a, b = ReplicatedDocument(), ReplicatedDocument()
        a.set_file("/a.txt", b"x", 1, Origin.LOCAL)
        a_state, b_state = a.new_peer_state(), b.new_peer_state()

        # a opens with its heads, b asks for what it lacks, a sends the changes.
        b.merge_update(a.encode_update(a_state), b_state)
        a.merge_update(b.encode_update(b_state), a_state)
        blob = a.encode_update(a_state)

        first = b.merge_update(blob, b_state)
        second = b.merge_update(blob, b.new_peer_state())

        assert [c.path for c in first] == ["/a.txt"]
        assert second == []
        assert b.get_file("/a.txt").content == b"x"

    def test_three_replicas_converge(self, converge) -> None:
        a, b, c = ReplicatedDocument(), ReplicatedDocument(), ReplicatedDocument()
        a.set_file("/a.txt", b"a", 1, Origin.LOCAL)
        b.set_file("/b.txt", b"b", 1, Origin.LOCAL)

        converge(a, c)
        converge(b, c)
        converge(a, c)

        assert a.files() == c.files()
        assert set(c.files()) == {"/a.txt", "/b.txt"}
        converge(a, b)
        assert a.files() == b.files() == c.files()

    def test_concurrent_writes_converge(self, converge) -> None:
        a, b = ReplicatedDocument(), ReplicatedDocument()
        a.set_file("/same.txt", b"from a", 10, Origin.LOCAL)
        b.set_file("/same.txt", b"from b", 11, Origin.LOCAL)

        converge(a, b)

        assert a.files() == b.files()
        assert a.get_file("/same.txt").content in (b"from a", b"from b")

    def test_delete_propagates(self, converge) -> None:
        a, b = ReplicatedDocument(), ReplicatedDocument()
        a.set_file("/a.txt", b"x", 1, Origin.LOCAL)
        converge(a, b)
        a.delete_file("/a.txt", Origin.LOCAL)
        converge(a, b)

        assert "/a.txt" not in b

    def test_later_edit_after_merge_wins(self, converge) -> None:
        a, b = ReplicatedDocument(), ReplicatedDocument()
        a.set_file("/a.txt", b"old", 1, Origin.LOCAL)
        converge(a, b)
        b.set_file("/a.txt", b"new", 2, Origin.LOCAL)
        converge(a, b)

        assert a.get_file("/a.txt").content == b"new"

    def test_updates_carry_only_new_changes(self, converge) -> None:
        a, b = ReplicatedDocument(), ReplicatedDocument()
        states = (a.new_peer_state(), b.new_peer_state())
        a.set_file("/big.bin", bytes(range(256)) * 4096, 1, Origin.LOCAL)
        converge(a, b, states)

        a.set_file("/tiny.txt", b"hi", 2, Origin.LOCAL)
        blob = a.encode_update(states[0])

        assert blob is not None
        assert len(blob) < 10_000
        b.merge_update(blob, states[1])
        assert b.get_file("/tiny.txt").content == b"hi"

    def test_garbage_raises_merge_error(self, doc) -> None:
        with pytest.raises(MergeError):
            doc.merge_update(b"definitely not automerge", doc.new_peer_state())
