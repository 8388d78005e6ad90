"""
Swarm streaming gateway.

Turns a peer swarm into a seekable byte stream: the TransferManager connects to
the swarm named by a locator, picks the largest video file once the swarm's
metadata is known and serves byte ranges of it while it is still downloading.

Only one transfer exists at a time; starting a new one tears the previous one
down first. The actual peer-to-peer work is done by a SwarmBackend.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Literal, Protocol

from aiowatchparty.models.swarm import SwarmFileInfo, TransferStatusPayload
from aiowatchparty.models.types import TransferStatus

VIDEO_EXTENSIONS = (".mp4", ".webm", ".mkv", ".avi", ".ogg", ".m4v", ".mov", ".m2ts", ".ts")
CONTENT_TYPES = {
    "mp4": "video/mp4",
    "m4v": "video/mp4",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "avi": "video/x-msvideo",
    "ogg": "video/ogg",
    "mov": "video/quicktime",
    "ts": "video/mp2t",
    "m2ts": "video/mp2t",
}
DEFAULT_CONTENT_TYPE = "video/mp4"
READY_PROGRESS = 0.005
"""Fraction of the selected file that must be present before it is served."""
STREAM_CHUNK_SIZE = 64 * 1024

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d+)\s*-\s*(\d*)\s*$", re.IGNORECASE)

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for errors raised by the streaming gateway."""


class InvalidRangeError(GatewayError, ValueError):
    """The Range header could not be parsed."""


class RangeNotSatisfiableError(GatewayError, ValueError):
    """The requested range lies outside the file."""

    def __init__(self, start: int, end: int | None, total: int) -> None:
        """Initialize with the requested bounds and the file length."""
        super().__init__(f"Range {start}-{'' if end is None else end} outside of 0-{total - 1}")
        self.total = total


class NoMediaSelectedError(GatewayError):
    """No transfer has a selected video file yet."""


class TransferNotReadyError(GatewayError):
    """A file is selected but not enough of it is present to serve reads."""


class StreamReadError(GatewayError):
    """Reading a span of the selected file from the swarm failed."""


@dataclass(frozen=True)
class SwarmFile:
    """A file listed in the swarm's metadata."""

    index: int
    name: str
    length: int

    def to_info(self) -> SwarmFileInfo:
        """Convert to the wire representation."""
        return SwarmFileInfo(name=self.name, length=self.length)


@dataclass(frozen=True)
class SwarmStats:
    """Transfer statistics of the selected file."""

    downloaded_bytes: int = 0
    peer_count: int = 0
    download_rate: int = 0
    upload_rate: int = 0


class SwarmHandle(Protocol):
    """Connection to a single swarm, as returned by SwarmBackend.open()."""

    @property
    def name(self) -> str | None:
        """Name of the swarm once its metadata is known."""
        ...

    async def wait_for_metadata(self) -> list[SwarmFile]:
        """Wait until the swarm's file list is known and return it."""
        ...

    def select_file(self, file: SwarmFile) -> None:
        """Download only ``file``, front to back."""
        ...

    def stats(self) -> SwarmStats:
        """Current statistics of the selected file."""
        ...

    def error(self) -> str | None:
        """Unrecoverable error reported by the swarm library, if any."""
        ...

    async def read(self, file: SwarmFile, offset: int, length: int) -> bytes:
        """Read a span of ``file``, waiting for the data to arrive if needed."""
        ...

    async def close(self) -> None:
        """Disconnect from all peers and discard downloaded data."""
        ...


class SwarmBackend(Protocol):
    """Peer-to-peer library used by the TransferManager."""

    async def open(self, locator: str) -> SwarmHandle:
        """Start resolving the swarm named by ``locator``."""
        ...


@dataclass
class Transfer:
    """The process-wide transfer record."""

    locator: str
    status: TransferStatus = TransferStatus.CONNECTING
    handle: SwarmHandle | None = None
    files: list[SwarmFile] = field(default_factory=list)
    selected_file: SwarmFile | None = None
    error: str | None = None
    task: asyncio.Task[None] | None = None
    """Task resolving the swarm's metadata."""


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte span of a file."""

    start: int
    end: int

    @property
    def length(self) -> int:
        """Number of bytes in the span."""
        return self.end - self.start + 1


@dataclass
class ByteStreamResponse:
    """Status, headers and streamed body for a media request."""

    status: int
    headers: dict[str, str]
    body: AsyncIterator[bytes]


def find_video_file(files: list[SwarmFile]) -> SwarmFile | None:
    """Return the largest file with a known video container extension."""
    videos = [f for f in files if f.name.lower().endswith(VIDEO_EXTENSIONS)]
    if not videos:
        return None
    return max(videos, key=lambda f: f.length)


def content_type_for(file_name: str) -> str:
    """Guess the Content-Type of a video file from its extension."""
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


def parse_range(header: str | None, total: int) -> ByteRange | None:
    """
    Parse a ``Range: bytes=start-end`` header against a file of ``total`` bytes.

    Returns:
        None if no range was requested, the inclusive span otherwise.

    Raises:
        InvalidRangeError: If the header is malformed.
        RangeNotSatisfiableError: If the span is not inside ``[0, total - 1]``.
    """
    if header is None or not header.strip():
        return None
    match = _RANGE_RE.match(header)
    if match is None:
        raise InvalidRangeError(f"Unsupported Range header: {header!r}")
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else total - 1
    if start > end or end > total - 1:
        raise RangeNotSatisfiableError(start, int(match.group(2)) if match.group(2) else None, total)
    return ByteRange(start, end)


class TransferManager:
    """Owns the single swarm transfer slot of the process."""

    _backend: SwarmBackend
    _transfer: Transfer | None
    _lock: asyncio.Lock
    """Serializes start and removal so two transfers never overlap."""
    _closing: set[asyncio.Task[None]]
    """Closes of handles that failed while being polled."""

    def __init__(self, backend: SwarmBackend) -> None:
        """Initialize with an idle slot."""
        self._backend = backend
        self._transfer = None
        self._lock = asyncio.Lock()
        self._closing = set()

    @property
    def transfer(self) -> Transfer | None:
        """The current transfer, None when idle."""
        return self._transfer

    async def start_transfer(self, locator: str) -> Literal["adding", "already-active"]:
        """
        Start streaming from the swarm named by ``locator``.

        If a transfer for the same locator is active this does nothing. Otherwise
        the previous transfer is torn down completely before connecting.
        """
        async with self._lock:
            current = self._transfer
            if (
                current is not None
                and current.locator == locator
                and current.status is not TransferStatus.ERROR
            ):
                logger.debug("Transfer for %s is already active", locator[:80])
                return "already-active"

            await self._teardown()

            logger.info("Adding swarm transfer: %s", locator[:80])
            transfer = Transfer(locator=locator)
            self._transfer = transfer
            transfer.task = asyncio.get_running_loop().create_task(self._connect(transfer))
            return "adding"

    async def remove_transfer(self) -> None:
        """Cancel the active transfer and return to idle. Does nothing when idle."""
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        transfer = self._transfer
        self._transfer = None
        if transfer is None:
            return
        logger.info("Removing swarm transfer: %s", transfer.locator[:80])
        if transfer.task is not None and not transfer.task.done():
            _ = transfer.task.cancel()
            with suppress(asyncio.CancelledError):
                await transfer.task
        await self._close_handle(transfer)
        transfer.selected_file = None
        transfer.error = None
        if self._closing:
            await asyncio.gather(*self._closing)

    async def _close_handle(self, transfer: Transfer) -> None:
        handle = transfer.handle
        transfer.handle = None
        if handle is None:
            return
        try:
            await handle.close()
        except Exception:
            # NOTE: the slot is already released, a failing close must not block the next transfer
            logger.exception("Error closing swarm connection for %s", transfer.locator[:80])

    async def _connect(self, transfer: Transfer) -> None:
        """Resolve the swarm's metadata and select the video file."""
        try:
            transfer.handle = await self._backend.open(transfer.locator)
            files = await transfer.handle.wait_for_metadata()
        except asyncio.CancelledError:
            logger.debug("Connecting to %s was cancelled", transfer.locator[:80])
            raise
        except Exception as err:
            logger.warning("Swarm transfer %s failed: %s", transfer.locator[:80], err)
            transfer.status = TransferStatus.ERROR
            transfer.error = str(err) or type(err).__name__
            await self._close_handle(transfer)
            return

        transfer.files = files
        video = find_video_file(files)
        if video is None:
            logger.warning(
                "No video file found in swarm. Files: %s", ", ".join(f.name for f in files)
            )
            transfer.status = TransferStatus.NO_VIDEO
            await self._close_handle(transfer)
            return

        transfer.handle.select_file(video)
        transfer.selected_file = video
        transfer.status = TransferStatus.DOWNLOADING
        logger.info("Selected video file %s (%.1f MB)", video.name, video.length / 1024 / 1024)
        self._refresh(transfer)

    def _refresh(self, transfer: Transfer) -> SwarmStats | None:
        """Pick up fatal errors and readiness from the swarm library."""
        handle = transfer.handle
        if handle is None or transfer.selected_file is None:
            return None
        if transfer.status not in (TransferStatus.DOWNLOADING, TransferStatus.READY):
            return None

        error = handle.error()
        if error is not None:
            logger.warning("Swarm transfer %s failed: %s", transfer.locator[:80], error)
            transfer.status = TransferStatus.ERROR
            transfer.error = error
            transfer.selected_file = None
            close_task = asyncio.get_running_loop().create_task(self._close_handle(transfer))
            self._closing.add(close_task)
            close_task.add_done_callback(self._closing.discard)
            return None

        stats = handle.stats()
        if (
            transfer.status is TransferStatus.DOWNLOADING
            and _fraction(stats.downloaded_bytes, transfer.selected_file.length) >= READY_PROGRESS
        ):
            logger.info("Transfer ready to stream: %s", transfer.selected_file.name)
            transfer.status = TransferStatus.READY
        return stats

    def get_status(self) -> TransferStatusPayload:
        """Return the status of the transfer slot."""
        transfer = self._transfer
        if transfer is None:
            return TransferStatusPayload(status=TransferStatus.IDLE)

        stats = self._refresh(transfer)
        handle = transfer.handle
        payload = TransferStatusPayload(
            status=transfer.status,
            swarm_name=handle.name if handle is not None else None,
            files=[f.to_info() for f in transfer.files],
            error=transfer.error,
        )
        selected = transfer.selected_file
        if selected is None or stats is None:
            return payload

        remaining = max(selected.length - stats.downloaded_bytes, 0)
        payload.progress = round(_fraction(stats.downloaded_bytes, selected.length) * 100, 2)
        payload.download_rate = stats.download_rate
        payload.upload_rate = stats.upload_rate
        payload.peer_count = stats.peer_count
        payload.downloaded_bytes = stats.downloaded_bytes
        payload.selected_file = selected.to_info()
        payload.total_bytes = selected.length
        payload.ready = transfer.status is TransferStatus.READY
        if stats.download_rate > 0:
            payload.estimated_seconds_remaining = remaining / stats.download_rate
        elif remaining == 0:
            payload.estimated_seconds_remaining = 0.0
        return payload

    def stream_bytes(self, range_header: str | None = None) -> ByteStreamResponse:
        """
        Serve the selected file, or the span named by ``range_header``.

        Raises:
            NoMediaSelectedError: If no file is selected.
            TransferNotReadyError: If the file is selected but not ready yet.
            InvalidRangeError: If the Range header is malformed.
            RangeNotSatisfiableError: If the range is outside the file.
        """
        transfer = self._transfer
        if transfer is None or transfer.selected_file is None or transfer.handle is None:
            raise NoMediaSelectedError("No video file available, add a swarm transfer first")
        self._refresh(transfer)
        if transfer.status is not TransferStatus.READY:
            raise TransferNotReadyError(f"Transfer is {transfer.status.value}, not ready")

        file = transfer.selected_file
        total = file.length
        byte_range = parse_range(range_header, total)
        headers = {
            "Accept-Ranges": "bytes",
            "Content-Type": content_type_for(file.name),
        }
        if byte_range is None:
            headers["Content-Length"] = str(total)
            return ByteStreamResponse(
                status=200,
                headers=headers,
                body=_read_span(transfer.handle, file, 0, total),
            )

        headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{total}"
        headers["Content-Length"] = str(byte_range.length)
        return ByteStreamResponse(
            status=206,
            headers=headers,
            body=_read_span(transfer.handle, file, byte_range.start, byte_range.length),
        )


def _fraction(done: int, total: int) -> float:
    if total <= 0:
        return 1.0
    return min(done / total, 1.0)


async def _read_span(
    handle: SwarmHandle, file: SwarmFile, offset: int, length: int
) -> AsyncIterator[bytes]:
    """Yield ``length`` bytes of ``file`` starting at ``offset`` in chunks."""
    end = offset + length
    while offset < end:
        size = min(STREAM_CHUNK_SIZE, end - offset)
        try:
            chunk = await handle.read(file, offset, size)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            raise StreamReadError(f"Reading {file.name} at {offset} failed: {err}") from err
        if not chunk:
            raise StreamReadError(f"Swarm returned no data for {file.name} at {offset}")
        offset += len(chunk)
        yield chunk
