"""CLI entrypoint serving the event bus (and optionally the RPC child)."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
import logging
from pathlib import Path
from typing import Any

from .config import ensure_config_dir, load_config
from .events.bus import EventBus
from .exceptions import OliIpcError
from .logging_utils import configure_logging
from .rpc.client import RpcClient

LOGGER = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oli-ipc",
        description="Serve the OLI loopback event bus and RPC bridge",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to an alternative ipc.toml",
    )
    return parser


async def serve(
    config: dict[str, dict[str, Any]], stop_event: asyncio.Event | None = None
) -> None:
    """Run the event bus until ``stop_event`` is set (or forever).

    When ``rpc.server_path`` is configured the RPC server is spawned for the
    same lifetime and its notifications are pushed into the bus.
    """
    bus = EventBus.from_config(config["event_bus"])
    await bus.start()
    client: RpcClient | None = None
    try:
        rpc_config = config["rpc"]
        if rpc_config.get("server_path"):
            client = await RpcClient.from_config(rpc_config)
            if rpc_config.get("forward_notifications", True):
                client.forward_to(bus)
        await (stop_event or asyncio.Event()).wait()
    finally:
        if client is not None:
            await client.close()
        await bus.stop()


def main(argv: Sequence[str] | None = None) -> None:
    """Load configuration, configure logging, and serve until interrupted."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("oli-ipc")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"oli-ipc {version}")
        return

    ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config["logging"])
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOGGER.info("oli_ipc.interrupted", extra={"event": "oli_ipc.interrupted"})
    except OliIpcError as exc:
        LOGGER.error(
            "oli_ipc.failed",
            extra={
                "event": "oli_ipc.failed",
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
