"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest


@pytest.fixture()
def sync_root(tmp_path: Path) -> Path:
    """Return an empty, resolved directory to synchronize."""
    root = tmp_path / "root"
    root.mkdir()
    return root.resolve()


@pytest.fixture()
def run():
    """Run a coroutine to completion on a fresh event loop."""

    def _run(coro, timeout: float = 30.0):
        return asyncio.run(asyncio.wait_for(coro, timeout))

    return _run


@pytest.fixture()
def converge():
    """Exchange sync messages between two documents until both are quiet.

    Pass ``states`` (``(a_view_of_b, b_view_of_a)``) to continue an existing
    exchange; otherwise a fresh pair is used.
    """

    def _converge(a, b, states=None, rounds: int = 20):
        a_state, b_state = states or (a.new_peer_state(), b.new_peer_state())
        for _ in range(rounds):
            quiet = True
            blob = a.encode_update(a_state)
            if blob is not None:
                b.merge_update(blob, b_state)
                quiet = False
            blob = b.encode_update(b_state)
            if blob is not None:
                a.merge_update(blob, a_state)
                quiet = False
            if quiet:
                return
        raise AssertionError("documents did not converge")

    return _converge
