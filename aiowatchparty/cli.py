"""Command-line interface for running a watch party server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import tempfile
from collections.abc import Sequence
from typing import TYPE_CHECKING

from aiohttp import web

from aiowatchparty.server import RoomRegistry, TransferManager, WatchPartyServer, create_app

if TYPE_CHECKING:
    from aiowatchparty.server.libtorrent_backend import LibtorrentBackend

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001


def _default_port() -> int:
    raw = os.environ.get("PORT")
    if not raw:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid PORT %r", raw)
        return DEFAULT_PORT


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the watch party server."""
    parser = argparse.ArgumentParser(description="Run a watch party server")
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Interface to listen on",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"Port to listen on (default: $PORT or {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--download-dir",
        default=None,
        help="Directory swarm transfers are saved to (default: a temporary directory)",
    )
    parser.add_argument(
        "--cors-origin",
        default="*",
        help="Value of Access-Control-Allow-Origin, empty to disable CORS headers",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    args = parser.parse_args(argv)
    if args.port is None:
        args.port = _default_port()
    return args


def _create_backend(download_dir: str) -> LibtorrentBackend:
    """Build the libtorrent backend, installed with the ``swarm`` extra."""
    from aiowatchparty.server.libtorrent_backend import LibtorrentBackend  # noqa: PLC0415

    return LibtorrentBackend(download_dir)


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous server workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    download_dir = args.download_dir or tempfile.mkdtemp(prefix="aiowatchparty-")
    try:
        backend = _create_backend(download_dir)
    except ImportError:
        logger.exception("libtorrent is not installed, install aiowatchparty[swarm]")
        return 1
    logger.info("Swarm transfers are saved to %s", download_dir)

    loop = asyncio.get_running_loop()
    transfers = TransferManager(backend)
    server = WatchPartyServer(loop, RoomRegistry(), transfers)
    app = create_app(server, cors_origin=args.cors_origin or None)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, args.host, args.port)
    await site.start()
    logger.info("Watch party server listening on http://%s:%s", args.host, args.port)

    stop_event = asyncio.Event()

    def signal_handler() -> None:
        logger.debug("Received interrupt signal, shutting down...")
        stop_event.set()

    loop.add_signal_handler(signal.SIGINT, signal_handler)
    loop.add_signal_handler(signal.SIGTERM, signal_handler)
    try:
        await stop_event.wait()
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)
        await transfers.remove_transfer()
        await runner.cleanup()
        await backend.close()
    return 0


def main() -> int:
    """Run the watch party server."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
