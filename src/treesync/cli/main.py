"""CLI entry point: ``treesync DIRECTORY [KEY]``."""

from __future__ import annotations

import asyncio
import logging

import click

from treesync.core.config import SyncConfig, load_root_config, merge_config
from treesync.core.errors import SyncRootError
from treesync.core.ids import generate_topic_key, validate_topic_key
from treesync.storage.fs import ensure_root, meta_dir
from treesync.storage.locks import acquire_root_lock

logger = logging.getLogger("treesync")


def _validate_key(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    if value is None:
        return None
    if not validate_topic_key(value):
        raise click.BadParameter("expected a 64-character hexadecimal topic key")
    return value.lower()


def _parse_peer(value: str) -> str:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise click.BadParameter(f"expected HOST:PORT, got {value!r}")
    return value


@click.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=str))
@click.argument("key", required=False, callback=_validate_key)
@click.option("--host", default=None, help="Listen address (default from config: 0.0.0.0).")
@click.option("--port", type=int, default=None, help="Listen port (default from config: ephemeral).")
@click.option("--peer", "peers", multiple=True, help="Static peer HOST:PORT to dial. Repeatable.")
@click.option("--no-lan", is_flag=True, help="Disable LAN broadcast discovery.")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def cli(
    directory: str,
    key: str | None,
    host: str | None,
    port: int | None,
    peers: tuple[str, ...],
    no_lan: bool,
    verbose: bool,
) -> None:
    """Keep DIRECTORY synchronized with every peer sharing KEY.

    Without KEY a new topic is created and this peer becomes the initial,
    authoritative copy.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        root = ensure_root(directory)
        config = load_root_config(meta_dir(root))
    except SyncRootError as exc:
        raise click.ClickException(str(exc)) from exc

    overrides: dict = {"listen": {}, "lan_discovery": {}}
    if host is not None:
        overrides["listen"]["host"] = host
    if port is not None:
        overrides["listen"]["port"] = port
    if peers:
        overrides["peers"] = [*config.get("peers", []), *(_parse_peer(p) for p in peers)]
    if no_lan:
        overrides["lan_discovery"]["enabled"] = False
    config = merge_config(config, overrides)  # type: ignore[assignment]

    if key:
        click.echo("Joining existing topic")
        topic_key = key
    else:
        topic_key = generate_topic_key()
        click.echo(f"New topic created; key: {topic_key}")

    try:
        asyncio.run(run(root, topic_key, authoritative=key is None, config=config))
    except KeyboardInterrupt:
        click.echo("\ntreesync: stopped.")
    except (SyncRootError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc


async def run(root, topic_key: str, *, authoritative: bool, config: SyncConfig) -> None:
    """Run an engine on *root* until cancelled."""
    from treesync.sync.discovery import LanDiscovery, StaticDiscovery
    from treesync.sync.engine import SyncEngine
    from treesync.sync.swarm import Swarm

    lock = acquire_root_lock(meta_dir(root))
    peer_id = config["peer_id"]

    discoveries: list = [StaticDiscovery(config.get("peers", []))]
    lan = config.get("lan_discovery", {})
    if lan.get("enabled", True):
        discoveries.append(
            LanDiscovery(peer_id, port=lan.get("port", 47913), interval=lan.get("interval", 5.0))
        )

    swarm = Swarm(
        peer_id,
        host=config["listen"].get("host", "0.0.0.0"),
        port=config["listen"].get("port", 0),
        discoveries=discoveries,
    )
    engine = SyncEngine(
        root,
        topic_key,
        authoritative=authoritative,
        swarm=swarm,
        peer_id=peer_id,
        ignore_patterns=config.get("ignore", []),
        bootstrap_timeout=float(config.get("bootstrap_timeout", 120.0)),
        write_stabilize=float(config.get("write_stabilize", 0.5)),
        lock=lock,
    )
    try:
        await swarm.listen()
        await engine.start()
        logger.info("Swarm joined. Awaiting peers...")
        await asyncio.Future()
    finally:
        await engine.close()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
