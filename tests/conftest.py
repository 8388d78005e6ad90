"""Shared fakes and fixtures for the aiowatchparty tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from aiowatchparty.models.types import ServerMessage
from aiowatchparty.server import (
    RoomRegistry,
    SwarmFile,
    SwarmStats,
    TransferManager,
    WatchPartyServer,
    create_app,
)

MAGNET = "magnet:?xt=urn:btih:0123456789abcdef0123456789abcdef01234567&dn=movie"
OTHER_MAGNET = "magnet:?xt=urn:btih:fedcba9876543210fedcba9876543210fedcba98&dn=other"


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSwarm:
    """In-memory SwarmHandle serving bytes from a buffer."""

    def __init__(
        self,
        files: list[SwarmFile],
        content: bytes = b"",
        *,
        name: str = "Fake swarm",
        downloaded_bytes: int | None = None,
        metadata_error: Exception | None = None,
    ) -> None:
        self.files = files
        self.content = content
        self.swarm_name = name
        self.downloaded_bytes = len(content) if downloaded_bytes is None else downloaded_bytes
        self.metadata_error = metadata_error
        self.metadata_ready = asyncio.Event()
        self.metadata_ready.set()
        self.error_message: str | None = None
        self.read_error: Exception | None = None
        self.selected: SwarmFile | None = None
        self.closed = False
        self.reads: list[tuple[int, int]] = []

    @property
    def name(self) -> str | None:
        return self.swarm_name

    async def wait_for_metadata(self) -> list[SwarmFile]:
        await self.metadata_ready.wait()
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.files

    def select_file(self, file: SwarmFile) -> None:
        self.selected = file

    def stats(self) -> SwarmStats:
        return SwarmStats(
            downloaded_bytes=self.downloaded_bytes,
            peer_count=3,
            download_rate=1_000,
            upload_rate=10,
        )

    def error(self) -> str | None:
        return self.error_message

    async def read(self, file: SwarmFile, offset: int, length: int) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        self.reads.append((offset, length))
        return self.content[offset : offset + length]

    async def close(self) -> None:
        self.closed = True


class FakeBackend:
    """SwarmBackend handing out prepared FakeSwarm handles by locator."""

    def __init__(self) -> None:
        self.swarms: dict[str, FakeSwarm] = {}
        self.opened: list[str] = []

    def add(self, locator: str, swarm: FakeSwarm) -> FakeSwarm:
        self.swarms[locator] = swarm
        return swarm

    async def open(self, locator: str) -> FakeSwarm:
        self.opened.append(locator)
        swarm = self.swarms.get(locator)
        if swarm is None:
            raise ValueError(f"Unknown swarm {locator}")
        return swarm


class FakePlayer:
    """MediaPlayer recording commands, optionally reporting them back like a real player."""

    def __init__(self, position: float = 0.0, *, native_seek_events: bool = True) -> None:
        self.native_seek_events = native_seek_events
        self.position = position
        self.playing = False
        self.calls: list[tuple[str, float | None]] = []
        self.on_change: Callable[[str, float], None] | None = None
        """Called after every command, like a player firing change notifications."""

    def seek(self, position: float) -> None:
        self.position = position
        self.calls.append(("seek", position))
        if self.on_change is not None:
            self.on_change("seek", position)

    def play(self) -> None:
        self.playing = True
        self.calls.append(("play", None))
        if self.on_change is not None:
            self.on_change("play", self.position)

    def pause(self) -> None:
        self.playing = False
        self.calls.append(("pause", None))
        if self.on_change is not None:
            self.on_change("pause", self.position)

    def current_position(self) -> float:
        return self.position


class FakeConnection:
    """Stand-in for a websocket Connection, collecting the messages sent to it."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.room_id: str | None = None
        self.display_name: str | None = None
        self.messages: list[ServerMessage] = []

    def send_message(self, message: ServerMessage) -> None:
        self.messages.append(message)

    def of_type(self, message_type: type[ServerMessage]) -> list[ServerMessage]:
        return [m for m in self.messages if isinstance(m, message_type)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rooms(clock: FakeClock) -> RoomRegistry:
    return RoomRegistry(clock=clock)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def video_swarm(backend: FakeBackend) -> FakeSwarm:
    """A swarm with one 10000 byte video next to a small text file."""
    content = bytes(i % 251 for i in range(10_000))
    return backend.add(
        MAGNET,
        FakeSwarm(
            [SwarmFile(0, "readme.txt", 100), SwarmFile(1, "movie.mp4", len(content))],
            content,
        ),
    )


@pytest_asyncio.fixture
async def transfers(backend: FakeBackend) -> TransferManager:
    return TransferManager(backend)


@pytest_asyncio.fixture
async def server(rooms: RoomRegistry, transfers: TransferManager) -> WatchPartyServer:
    return WatchPartyServer(asyncio.get_running_loop(), rooms, transfers)


@pytest_asyncio.fixture
async def http_client(server: WatchPartyServer):
    """aiohttp test client talking to the full application."""
    client = TestClient(TestServer(create_app(server)))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()


async def wait_for_transfer(transfers: TransferManager) -> None:
    """Let the background connect task of the current transfer finish."""
    transfer = transfers.transfer
    assert transfer is not None
    assert transfer.task is not None
    await transfer.task
