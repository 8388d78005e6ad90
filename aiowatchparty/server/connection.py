"""Represents a single participant connection to the server."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from contextlib import suppress
from typing import TYPE_CHECKING, cast

from aiohttp import WSMessage, WSMsgType, web

from aiowatchparty.models.room import (
    ChangeSourceClientMessage,
    ChatClientMessage,
    ErrorServerMessage,
    ErrorServerPayload,
    JoinClientMessage,
    LeaveClientMessage,
    PauseClientMessage,
    PlayClientMessage,
    SeekClientMessage,
)
from aiowatchparty.models.types import ClientMessage, ErrorCode, ServerMessage

MAX_PENDING_MSG = 512
MAX_CHAT_LENGTH = 2000
CHAT_RATE_LIMIT = 5
"""Chat messages allowed per connection inside CHAT_RATE_WINDOW."""
CHAT_RATE_WINDOW = 5.0

logger = logging.getLogger(__name__)

# The cyclic import is not an issue during runtime, so hide it
# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .server import WatchPartyServer


class Connection:
    """
    A participant connected to a WatchPartyServer over a WebSocket.

    Inbound intents are handled one at a time in the order they arrive; outbound
    messages are queued and written by a dedicated writer task.
    """

    _server: WatchPartyServer
    """Reference to the WatchPartyServer instance this connection belongs to."""
    _request: web.Request
    _wsock: web.WebSocketResponse
    _connection_id: str
    _writer_task: asyncio.Task[None] | None = None
    """Task responsible for sending JSON messages."""
    _to_write: asyncio.Queue[ServerMessage]
    """Queue for messages to be sent to the participant through the WebSocket."""
    _chat_times: deque[float]
    """Loop times of the most recent chat messages, for rate limiting."""
    _closing: bool = False
    _logger: logging.Logger
    room_id: str | None = None
    """Room this connection joined, None before joining or after leaving."""
    display_name: str | None = None

    def __init__(self, server: WatchPartyServer, request: web.Request) -> None:
        """
        DO NOT CALL THIS CONSTRUCTOR. INTERNAL USE ONLY.

        Use WatchPartyServer.on_connect instead.
        """
        self._server = server
        self._request = request
        self._wsock = web.WebSocketResponse(heartbeat=55)
        self._connection_id = uuid.uuid4().hex
        self._logger = logger.getChild(self._connection_id[:8])
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self._chat_times = deque()
        self._closing = False
        self.room_id = None
        self.display_name = None

    @property
    def connection_id(self) -> str:
        """The unique identifier of this connection."""
        return self._connection_id

    @property
    def closing(self) -> bool:
        """Whether this connection is in the process of closing."""
        return self._closing

    async def handle(self) -> web.WebSocketResponse:
        """
        Handle the complete websocket connection lifecycle.

        Should only be called by WatchPartyServer during connection handling.
        """
        try:
            await self._setup_connection()
            await self._run_message_loop()
        finally:
            await self._cleanup_connection()
        return self._wsock

    async def _setup_connection(self) -> None:
        try:
            async with asyncio.timeout(10):
                _ = await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("Timeout preparing request")
            raise
        self._logger.info("Connection established from %s", self._request.remote)
        self._writer_task = self._server.loop.create_task(self._writer())

    async def _run_message_loop(self) -> None:
        """Run the main message processing loop."""
        receive_task: asyncio.Task[WSMessage] | None = None
        try:
            while not self._wsock.closed:
                # Wait for either a message or the writer task to complete (meaning the
                # participant disconnected or errored)
                receive_task = self._server.loop.create_task(self._wsock.receive())
                assert self._writer_task is not None  # for type checking
                done, pending = await asyncio.wait(
                    [receive_task, self._writer_task],
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if self._writer_task in done:
                    self._logger.debug("Writer task ended, closing connection")
                    if receive_task in pending:
                        _ = receive_task.cancel()
                    break

                try:
                    msg = await receive_task
                except (ConnectionError, asyncio.CancelledError, TimeoutError) as e:
                    self._logger.error("Error receiving message: %s", e)
                    break

                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break

                if msg.type != WSMsgType.TEXT:
                    continue

                try:
                    message = ClientMessage.from_json(cast("str", msg.data))
                except Exception as err:
                    self._logger.warning("Rejecting undecodable message: %s", err)
                    self.send_error(ErrorCode.INVALID_INPUT, f"Malformed message: {err}")
                    continue

                try:
                    await self._handle_message(message)
                except ValueError as err:
                    self._logger.warning("Rejecting %s: %s", type(message).__name__, err)
                    self.send_error(ErrorCode.INVALID_INPUT, str(err), message)
                except Exception:
                    self._logger.exception("Error handling %s", type(message).__name__)
            self._logger.debug("wsock was closed")

        except asyncio.CancelledError:
            self._logger.debug("Connection closed by participant")
        except Exception:
            self._logger.exception("Unexpected error inside websocket API")
        finally:
            if receive_task and not receive_task.done():
                _ = receive_task.cancel()

    async def _cleanup_connection(self) -> None:
        """Leave the room, stop the writer and close the WebSocket."""
        self._closing = True
        self._server.leave_room(self)

        if self._writer_task and not self._writer_task.done():
            _ = self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task

        try:
            if not self._wsock.closed:
                _ = await self._wsock.close()
        except Exception:
            self._logger.exception("Failed to close websocket")
        self._logger.info("Connection closed")

    def _check_room(self, room_id: str) -> bool:
        if self.room_id is not None and self.room_id == room_id:
            return True
        self.send_error(ErrorCode.NOT_IN_ROOM, f"Not a participant of room {room_id}")
        return False

    async def _handle_message(self, message: ClientMessage) -> None:
        """Handle an intent from the participant."""
        match message:
            case JoinClientMessage(payload):
                self._server.join_room(self, payload.room_id, payload.display_name)
            case LeaveClientMessage():
                self._server.leave_room(self)
            case ChangeSourceClientMessage(payload):
                if self._check_room(payload.room_id):
                    await self._server.change_source(self, payload.source)
            case PlayClientMessage(payload):
                if self._check_room(payload.room_id):
                    self._server.play(self, payload.current_time)
            case PauseClientMessage(payload):
                if self._check_room(payload.room_id):
                    self._server.pause(self, payload.current_time)
            case SeekClientMessage(payload):
                if self._check_room(payload.room_id):
                    self._server.seek(self, payload.current_time)
            case ChatClientMessage(payload):
                if self._check_room(payload.room_id):
                    self._handle_chat(payload.text)
            case _:
                self._logger.debug("Unhandled client message type: %s", type(message).__name__)

    def _handle_chat(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        if len(text) > MAX_CHAT_LENGTH:
            raise ValueError(f"Chat message longer than {MAX_CHAT_LENGTH} characters")

        now = self._server.loop.time()
        while self._chat_times and now - self._chat_times[0] >= CHAT_RATE_WINDOW:
            _ = self._chat_times.popleft()
        if len(self._chat_times) >= CHAT_RATE_LIMIT:
            self._logger.warning("Chat rate limit exceeded")
            self.send_error(
                ErrorCode.RATE_LIMITED,
                f"At most {CHAT_RATE_LIMIT} messages per {CHAT_RATE_WINDOW:g} seconds",
            )
            return
        self._chat_times.append(now)
        self._server.chat(self, text)

    async def _writer(self) -> None:
        """Write outgoing messages from the queue."""
        try:
            while not self._wsock.closed and not self._closing:
                item = await self._to_write.get()
                try:
                    await self._wsock.send_str(item.to_json())
                except ConnectionError:
                    self._logger.warning("Connection error sending JSON data, ending writer task")
                    break
            self._logger.debug("WebSocket Connection was closed, ending writer task")
        except Exception:
            self._logger.exception("Error in writer task for connection")

    def send_message(self, message: ServerMessage) -> None:
        """Enqueue a message to be sent to the participant."""
        if self._closing:
            return
        self._logger.debug("Enqueueing message: %s", type(message).__name__)
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            # A participant this far behind can not be resynchronized message by message
            self._logger.warning("Outgoing queue full, dropping connection")
            self._closing = True
            if self._writer_task is not None:
                _ = self._writer_task.cancel()

    def send_error(
        self, code: ErrorCode, reason: str, intent: ClientMessage | None = None
    ) -> None:
        """Tell the participant that an intent was rejected."""
        intent_type = getattr(intent, "type", None) if intent is not None else None
        self.send_message(
            ErrorServerMessage(
                payload=ErrorServerPayload(code=code, reason=reason, intent=intent_type)
            )
        )
