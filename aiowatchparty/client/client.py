"""Watch party client implementation to join a room on a watch party server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from types import TracebackType
from typing import Any, Self

from aiohttp import ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aiowatchparty.models.room import (
    ChangeSourceClientMessage,
    ChangeSourceClientPayload,
    ChatClientMessage,
    ChatClientPayload,
    ChatServerMessage,
    ChatServerPayload,
    ErrorServerMessage,
    ErrorServerPayload,
    JoinClientMessage,
    JoinClientPayload,
    LeaveClientMessage,
    NoticeServerPayload,
    ParticipantInfo,
    ParticipantJoinedServerMessage,
    ParticipantLeftServerMessage,
    ParticipantListServerMessage,
    PlaybackPausedServerMessage,
    PlaybackSoughtServerMessage,
    PlaybackStartedServerMessage,
    PresenceSnapshotServerMessage,
    SourceChangedServerMessage,
)
from aiowatchparty.models.source import MediaSource, default_source
from aiowatchparty.models.types import ClientMessage, ServerMessage

from .player import MediaPlayer
from .reconciler import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SEEK_THRESHOLD,
    DEFAULT_SETTLE_WINDOW,
    ReconciliationEngine,
)

logger = logging.getLogger(__name__)

ParticipantsCallback = Callable[[list[ParticipantInfo]], Awaitable[None] | None]
ChatCallback = Callable[[ChatServerPayload], Awaitable[None] | None]
NoticeCallback = Callable[[str, NoticeServerPayload], Awaitable[None] | None]
"""Called with "joined" or "left" and the notice."""
SourceCallback = Callable[[MediaSource], Awaitable[None] | None]
ErrorCallback = Callable[[ErrorServerPayload], Awaitable[None] | None]


class WatchPartyClient:
    """Async watch party participant keeping a local player in sync with a room."""

    def __init__(
        self,
        room_id: str,
        display_name: str,
        *,
        session: ClientSession | None = None,
        settle_window: float = DEFAULT_SETTLE_WINDOW,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        seek_threshold: float = DEFAULT_SEEK_THRESHOLD,
    ) -> None:
        """Create a new client for one room."""
        self._room_id = room_id
        self._display_name = display_name
        self._session = session
        self._owns_session = session is None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._connected = False
        self._joined_event: asyncio.Event | None = None
        self._engine = ReconciliationEngine(
            room_id,
            self._send_json,
            load_source=self._load_source,
            settle_window=settle_window,
            poll_interval=poll_interval,
            seek_threshold=seek_threshold,
        )
        self._source: MediaSource = default_source()
        self._participants: list[ParticipantInfo] = []
        self._participant_callbacks: list[ParticipantsCallback] = []
        self._chat_callbacks: list[ChatCallback] = []
        self._notice_callbacks: list[NoticeCallback] = []
        self._source_callbacks: list[SourceCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def room_id(self) -> str:
        """Room this client participates in."""
        return self._room_id

    @property
    def connected(self) -> bool:
        """Return True if the client currently has an active connection."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def engine(self) -> ReconciliationEngine:
        """The engine reconciling remote commands with the local player."""
        return self._engine

    @property
    def source(self) -> MediaSource:
        """The room's current media source as last seen by this client."""
        return self._source

    @property
    def participants(self) -> list[ParticipantInfo]:
        """The room's participants as last seen by this client."""
        return list(self._participants)

    async def connect(self, url: str) -> None:
        """Connect to a watch party server via WebSocket and join the room."""
        if self.connected:
            logger.debug("Already connected")
            return

        self._loop = asyncio.get_running_loop()
        if self._session is None:
            self._session = ClientSession()
        self._joined_event = asyncio.Event()

        logger.info("Connecting to watch party server at %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=30)
        self._connected = True
        self._reader_task = self._loop.create_task(self._reader_loop())
        await self._send_json(
            JoinClientMessage(JoinClientPayload(room_id=self._room_id, display_name=self._display_name))
        )

        try:
            await asyncio.wait_for(self._joined_event.wait(), timeout=10)
        except TimeoutError as err:
            await self.disconnect()
            raise TimeoutError("Timed out waiting for room/presence-snapshot") from err
        logger.info("Joined room %s as %s", self._room_id, self._display_name)

    async def disconnect(self) -> None:
        """Leave the room, disconnect from the server and release resources."""
        was_connected = self.connected
        self._connected = False
        current_task = asyncio.current_task(loop=self._loop) if self._loop else None

        if was_connected and self._ws is not None:
            with suppress(ConnectionError, RuntimeError):
                await self._send_json(LeaveClientMessage())
        await self._engine.close()
        if self._reader_task is not None:
            if self._reader_task is not current_task:
                _ = self._reader_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._participants = []

    def attach_player(self, player: MediaPlayer) -> None:
        """Drive ``player`` from the room's playback events."""
        self._engine.attach_player(player)

    async def change_source(self, source: MediaSource) -> None:
        """Switch the whole room to ``source``."""
        if not self.connected:
            raise RuntimeError("Client is not connected")
        self._source = source
        await self._send_json(
            ChangeSourceClientMessage(ChangeSourceClientPayload(room_id=self._room_id, source=source))
        )

    async def send_chat(self, text: str) -> None:
        """Send a chat message to the room."""
        if not self.connected:
            raise RuntimeError("Client is not connected")
        await self._send_json(ChatClientMessage(ChatClientPayload(room_id=self._room_id, text=text)))

    def play(self, position: float | None = None) -> bool:
        """Report that the local player started. Returns whether an intent was sent."""
        return self._engine.on_local_play(position)

    def pause(self, position: float | None = None) -> bool:
        """Report that the local player paused. Returns whether an intent was sent."""
        return self._engine.on_local_pause(position)

    def seek(self, position: float) -> bool:
        """Report that the user scrubbed the local player. Returns whether an intent was sent."""
        return self._engine.on_local_seek(position)

    def add_participants_listener(self, callback: ParticipantsCallback) -> None:
        """Register a callback invoked whenever the participant list changes."""
        self._participant_callbacks.append(callback)

    def add_chat_listener(self, callback: ChatCallback) -> None:
        """Register a callback invoked on chat/message messages."""
        self._chat_callbacks.append(callback)

    def add_notice_listener(self, callback: NoticeCallback) -> None:
        """Register a callback invoked when someone joins or leaves."""
        self._notice_callbacks.append(callback)

    def add_source_listener(self, callback: SourceCallback) -> None:
        """Register a callback invoked to load a new source into the local player."""
        self._source_callbacks.append(callback)

    def add_error_listener(self, callback: ErrorCallback) -> None:
        """Register a callback invoked on server/error messages."""
        self._error_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _send_json(self, message: ClientMessage) -> None:
        if not self._ws:
            raise RuntimeError("WebSocket is not connected")
        async with self._send_lock:
            await self._ws.send_str(message.to_json())

    async def _load_source(self, source: MediaSource) -> None:
        self._source = source
        await self._notify_callbacks(self._source_callbacks, source)

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                await self._handle_ws_message(msg)
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass
        except Exception:
            logger.exception("WebSocket reader encountered an error")
        finally:
            if self._connected:
                await self.disconnect()

    async def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.TEXT:
            await self._handle_json_message(msg.data)
        elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            logger.info("WebSocket closed by server")
            await self.disconnect()
        elif msg.type is WSMsgType.ERROR:
            logger.error("WebSocket error: %s", self._ws.exception() if self._ws else "unknown")
            await self.disconnect()
        else:
            logger.debug("Ignoring websocket message of type %s", msg.type)

    async def _handle_json_message(self, data: str) -> None:
        try:
            message = ServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse server message: %s", data)
            return

        match message:
            case PresenceSnapshotServerMessage(payload=payload):
                self._source = payload.source
                await self._set_participants(payload.participants)
                await self._engine.apply_presence_snapshot(payload)
                if self._joined_event:
                    self._joined_event.set()
            case ParticipantListServerMessage(payload=payload):
                await self._set_participants(payload.participants)
            case ParticipantJoinedServerMessage(payload=payload):
                await self._notify_notice("joined", payload)
            case ParticipantLeftServerMessage(payload=payload):
                await self._notify_notice("left", payload)
            case SourceChangedServerMessage(payload=source):
                await self._engine.apply_remote_source(source)
            case (
                PlaybackStartedServerMessage()
                | PlaybackPausedServerMessage()
                | PlaybackSoughtServerMessage()
            ):
                self._engine.apply_remote_command(message)
            case ChatServerMessage(payload=payload):
                await self._notify_callbacks(self._chat_callbacks, payload)
            case ErrorServerMessage(payload=payload):
                logger.warning("Server rejected %s: %s", payload.intent, payload.reason)
                await self._notify_callbacks(self._error_callbacks, payload)
            case _:
                logger.debug("Unhandled server message type: %s", type(message).__name__)

    async def _set_participants(self, participants: list[ParticipantInfo]) -> None:
        self._participants = list(participants)
        await self._notify_callbacks(self._participant_callbacks, self.participants)

    async def _notify_notice(self, kind: str, payload: NoticeServerPayload) -> None:
        for callback in self._notice_callbacks:
            try:
                result = callback(kind, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in notice callback %s", callback)

    async def _notify_callbacks(
        self,
        callbacks: list[Callable[[Any], Awaitable[None] | None]],
        payload: Any,
    ) -> None:
        for callback in callbacks:
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in client callback %s", callback)

    async def __aenter__(self) -> Self:
        """Enter the async context manager returning this instance."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Disconnect when leaving the async context manager."""
        await self.disconnect()
