"""Per-root sync configuration.

Stored in ``<root>/.sync/config.json``.  The metadata directory is ignored
by the watcher, so the file never enters the synchronized tree.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import TypedDict

from treesync.core.errors import SyncRootError
from treesync.core.ids import generate_peer_id

CONFIG_FILENAME = "config.json"


class ListenConfig(TypedDict, total=False):
    host: str
    port: int


class LanDiscoveryConfig(TypedDict, total=False):
    enabled: bool
    port: int
    interval: float


class SyncConfig(TypedDict, total=False):
    schema_version: int
    peer_id: str
    listen: ListenConfig
    peers: list[str]
    lan_discovery: LanDiscoveryConfig
    bootstrap_timeout: float
    write_stabilize: float
    ignore: list[str]


def default_config() -> SyncConfig:
    """Return the default configuration with a freshly generated peer id."""
    return {
        "schema_version": 1,
        "peer_id": generate_peer_id(),
        "listen": {
            "host": "0.0.0.0",
            "port": 0,
        },
        "peers": [],
        "lan_discovery": {
            "enabled": True,
            "port": 47913,
            "interval": 5.0,
        },
        "bootstrap_timeout": 120.0,
        "write_stabilize": 0.5,
        "ignore": [],
    }


def serialize_config(config: SyncConfig | dict[str, object]) -> str:
    """Serialize a config dict to the canonical JSON format."""
    return json.dumps(config, sort_keys=True, indent=2) + "\n"


def merge_config(base: dict, overrides: dict) -> dict:
    """Return *base* with *overrides* applied; nested dicts merge key by key."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(raw: str) -> SyncConfig:
    """Parse a JSON config string and fill in defaults for missing keys.

    Pure function; callers read the file.
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("config must be a JSON object")
    return merge_config(default_config(), data)  # type: ignore[return-value]


def load_root_config(meta_dir: Path) -> SyncConfig:
    """Load the config for a root, creating and persisting defaults if missing.

    The file is written on first use so that ``peer_id`` (and therefore the
    scratch directory name) stays stable across runs.

    Raises:
        SyncRootError: If the file cannot be read, parsed, or created.
    """
    path = meta_dir / CONFIG_FILENAME
    try:
        if path.exists():
            return load_config(path.read_text())
        config = default_config()
        save_root_config(meta_dir, config)
    except (OSError, ValueError) as exc:
        raise SyncRootError(f"cannot load {path}: {exc}") from exc
    return config


def save_root_config(meta_dir: Path, config: SyncConfig) -> None:
    from treesync.storage.fs import atomic_write

    meta_dir.mkdir(parents=True, exist_ok=True)
    atomic_write(meta_dir / CONFIG_FILENAME, serialize_config(config))
