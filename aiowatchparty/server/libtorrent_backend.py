"""SwarmBackend implementation on top of libtorrent."""

from __future__ import annotations

import asyncio
import logging
import os
import time

import libtorrent as lt

from .swarm import SwarmFile, SwarmStats

METADATA_POLL_INTERVAL = 0.5
PIECE_POLL_INTERVAL = 0.1
READ_TIMEOUT = 60.0
"""Seconds a single read waits for its pieces before giving up."""
READ_DEADLINE_MS = 1_000
REMOVE_POLL_INTERVAL = 0.05
REMOVE_TIMEOUT = 10.0
"""Seconds close waits for libtorrent to drop the torrent."""
ADD_RETRIES = 20
DONT_DOWNLOAD = 0
TOP_PRIORITY = 7

logger = logging.getLogger(__name__)


def _read_from_disk(path: str, offset: int, length: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(length)


class LibtorrentSwarm:
    """One torrent added to the backend's libtorrent session."""

    def __init__(self, session: lt.session, handle: lt.torrent_handle, save_path: str) -> None:
        """Wrap an already added torrent. Use LibtorrentBackend.open instead."""
        self._session = session
        self._handle = handle
        self._save_path = save_path
        self._selected: SwarmFile | None = None
        self._closed = False

    @property
    def name(self) -> str | None:
        """Torrent name, None until metadata is known."""
        if self._closed:
            return None
        status = self._handle.status()
        return status.name if status.has_metadata else None

    def error(self) -> str | None:
        """Error reported by libtorrent for this torrent."""
        if self._closed:
            return "Transfer closed"
        status = self._handle.status()
        if status.errc.value() != 0:
            return str(status.errc.message())
        return None

    async def wait_for_metadata(self) -> list[SwarmFile]:
        """Poll until the magnet link's metadata has been fetched from peers."""
        while True:
            if self._closed:
                raise RuntimeError("Transfer closed")
            error = self.error()
            if error is not None:
                raise RuntimeError(error)
            if self._handle.status().has_metadata:
                break
            await asyncio.sleep(METADATA_POLL_INTERVAL)

        files = self._handle.torrent_file().files()
        result = [
            SwarmFile(index=i, name=files.file_path(i), length=files.file_size(i))
            for i in range(files.num_files())
        ]
        logger.debug("Metadata for %s: %d files", self.name, len(result))
        return result

    def select_file(self, file: SwarmFile) -> None:
        """Download only ``file``, sequentially so its start is available first."""
        num_files = self._handle.torrent_file().files().num_files()
        priorities = [DONT_DOWNLOAD] * num_files
        priorities[file.index] = TOP_PRIORITY
        self._handle.prioritize_files(priorities)
        self._handle.set_flags(lt.torrent_flags.sequential_download)
        self._selected = file

    def stats(self) -> SwarmStats:
        """Statistics of the torrent, progress counted for the selected file."""
        if self._closed:
            return SwarmStats()
        status = self._handle.status()
        downloaded = 0
        if self._selected is not None:
            downloaded = int(self._handle.file_progress()[self._selected.index])
        return SwarmStats(
            downloaded_bytes=downloaded,
            peer_count=status.num_peers,
            download_rate=status.download_rate,
            upload_rate=status.upload_rate,
        )

    def _pieces_for(self, file: SwarmFile, offset: int, length: int) -> range:
        info = self._handle.torrent_file()
        first = info.map_file(file.index, offset, 1).piece
        last = info.map_file(file.index, offset + length - 1, 1).piece
        return range(first, last + 1)

    async def read(self, file: SwarmFile, offset: int, length: int) -> bytes:
        """Request the pieces under the span with a deadline and read them from disk."""
        pieces = self._pieces_for(file, offset, length)
        for i, piece in enumerate(pieces):
            if not self._handle.have_piece(piece):
                self._handle.set_piece_deadline(piece, READ_DEADLINE_MS + i * 100)

        deadline = time.monotonic() + READ_TIMEOUT
        while not all(self._handle.have_piece(p) for p in pieces):
            if self._closed:
                raise RuntimeError("Transfer closed")
            if time.monotonic() > deadline:
                raise TimeoutError(
                    f"Pieces {pieces.start}-{pieces.stop - 1} did not arrive in {READ_TIMEOUT}s"
                )
            await asyncio.sleep(PIECE_POLL_INTERVAL)

        path = os.path.join(self._save_path, file.name)
        return await asyncio.to_thread(_read_from_disk, path, offset, length)

    async def close(self) -> None:
        """Remove the torrent from the session and delete its files."""
        if self._closed:
            return
        self._closed = True
        self._session.remove_torrent(self._handle, lt.options_t.delete_files)

        # Removal is asynchronous, the info-hash stays taken until the handle is invalid
        deadline = time.monotonic() + REMOVE_TIMEOUT
        while self._handle.is_valid():
            if time.monotonic() > deadline:
                logger.warning("Torrent still in session %.0fs after removal", REMOVE_TIMEOUT)
                return
            await asyncio.sleep(REMOVE_POLL_INTERVAL)


class LibtorrentBackend:
    """Connects to BitTorrent swarms (TCP, uTP and DHT peers) through libtorrent."""

    def __init__(self, save_path: str, *, listen_interfaces: str = "0.0.0.0:6881") -> None:
        """
        Initialize the backend.

        Args:
            save_path: Directory downloaded files are written to.
            listen_interfaces: libtorrent listen_interfaces setting.
        """
        self._save_path = save_path
        self._listen_interfaces = listen_interfaces
        self._session: lt.session | None = None

    def _get_session(self) -> lt.session:
        if self._session is None:
            logger.debug("Starting libtorrent session on %s", self._listen_interfaces)
            self._session = lt.session(
                {
                    "listen_interfaces": self._listen_interfaces,
                    "enable_dht": True,
                    "enable_lsd": True,
                    "enable_upnp": False,
                    "enable_natpmp": False,
                }
            )
        return self._session

    async def open(self, locator: str) -> LibtorrentSwarm:
        """Add the magnet link to the session."""
        try:
            params = lt.parse_magnet_uri(locator)
        except RuntimeError as err:
            raise ValueError(f"Malformed magnet link: {err}") from err
        params.save_path = self._save_path
        os.makedirs(self._save_path, exist_ok=True)
        session = self._get_session()
        for attempt in range(ADD_RETRIES):
            try:
                handle = session.add_torrent(params)
                break
            except RuntimeError as err:
                # A just removed torrent with the same info-hash may still be leaving
                if attempt == ADD_RETRIES - 1:
                    raise
                logger.debug("Adding torrent failed (%s), retrying", err)
                await asyncio.sleep(REMOVE_POLL_INTERVAL)
        return LibtorrentSwarm(session, handle, self._save_path)

    async def close(self) -> None:
        """Stop the libtorrent session."""
        if self._session is not None:
            self._session.pause()
            self._session = None
