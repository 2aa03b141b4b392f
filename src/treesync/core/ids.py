"""Topic keys, discovery keys and peer identities."""

from __future__ import annotations

import hashlib
import re
import secrets

from ulid import ULID

TOPIC_KEY_BYTES = 32

_TOPIC_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_DISCOVERY_PREFIX = b"treesync:discovery:"


def generate_topic_key() -> str:
    """Return a fresh random topic key as lowercase hex."""
    return secrets.token_hex(TOPIC_KEY_BYTES)


def validate_topic_key(key: str) -> bool:
    """Return ``True`` if *key* is a 32-byte hex string."""
    return bool(_TOPIC_KEY_RE.match(key))


def discovery_key(key: str) -> str:
    """Derive the public discovery key announced for a topic or snapshot locator.

    Peers look each other up by the discovery key so the key itself never
    leaves the process in discovery traffic.
    """
    return hashlib.sha256(_DISCOVERY_PREFIX + bytes.fromhex(key)).hexdigest()


def generate_peer_id() -> str:
    """Return a new peer identity (``peer_<ULID>``)."""
    return f"peer_{ULID()}"
