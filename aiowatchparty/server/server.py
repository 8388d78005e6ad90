"""Watch party server: room state, event relaying and the swarm gateway."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass

from aiohttp import web

from aiowatchparty.models import now_ms
from aiowatchparty.models.room import (
    ChatServerMessage,
    ChatServerPayload,
    NoticeServerPayload,
    ParticipantJoinedServerMessage,
    ParticipantLeftServerMessage,
    ParticipantListServerMessage,
    ParticipantListServerPayload,
    PlaybackPausedServerMessage,
    PlaybackServerPayload,
    PlaybackSoughtServerMessage,
    PlaybackStartedServerMessage,
    PresenceSnapshotServerMessage,
    SourceChangedServerMessage,
)
from aiowatchparty.models.source import MediaSource, SwarmSource

from .broadcast import RoomBroadcaster
from .connection import Connection
from .rooms import RoomRegistry, RoomSnapshot
from .swarm import TransferManager

logger = logging.getLogger(__name__)


class WatchPartyEvent:
    """Base event type used by WatchPartyServer.add_event_listener()."""


@dataclass
class ParticipantJoinedEvent(WatchPartyEvent):
    """A participant joined a room."""

    room_id: str
    connection_id: str
    display_name: str


@dataclass
class ParticipantLeftEvent(WatchPartyEvent):
    """A participant left a room."""

    room_id: str
    connection_id: str
    display_name: str | None


@dataclass
class RoomDeletedEvent(WatchPartyEvent):
    """The last participant left and the room is gone."""

    room_id: str


class WatchPartyServer:
    """
    Server keeping rooms of participants in sync.

    The room registry and the transfer manager are passed in, so they can be
    shared with the HTTP control plane and replaced in tests.
    """

    loop: asyncio.AbstractEventLoop
    _rooms: RoomRegistry
    _broadcaster: RoomBroadcaster
    _transfers: TransferManager
    _connections: set[Connection]
    _event_cbs: list[Callable[[WatchPartyEvent], Coroutine[None, None, None]]]

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        rooms: RoomRegistry,
        transfers: TransferManager,
    ) -> None:
        """Initialize a new server."""
        self.loop = loop
        self._rooms = rooms
        self._broadcaster = RoomBroadcaster()
        self._transfers = transfers
        self._connections = set()
        self._event_cbs = []
        logger.debug("WatchPartyServer initialized")

    @property
    def rooms(self) -> RoomRegistry:
        """Registry holding the authoritative room state."""
        return self._rooms

    @property
    def transfers(self) -> TransferManager:
        """Manager of the swarm transfer slot."""
        return self._transfers

    @property
    def connections(self) -> set[Connection]:
        """Get the set of all open connections."""
        return self._connections

    async def on_connect(self, request: web.Request) -> web.WebSocketResponse:
        """Handle an incoming WebSocket connection from a participant."""
        logger.debug("Incoming connection from %s", request.remote)
        connection = Connection(self, request)
        self._connections.add(connection)
        try:
            return await connection.handle()
        finally:
            self._connections.discard(connection)

    def add_event_listener(
        self, callback: Callable[[WatchPartyEvent], Coroutine[None, None, None]]
    ) -> Callable[[], None]:
        """Register a callback to listen for room membership changes.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _signal_event(self, event: WatchPartyEvent) -> None:
        for cb in self._event_cbs:
            _ = self.loop.create_task(cb(event))

    def create_room(self) -> str:
        """Pre-create a room and return its id."""
        room_id = self._rooms.create_room()
        logger.info("Room %s created", room_id)
        return room_id

    def room_state(self, room_id: str) -> RoomSnapshot | None:
        """Live snapshot of a room, None if it does not exist."""
        return self._rooms.snapshot(room_id)

    def _publish_participant_list(self, room_id: str) -> None:
        participants = [p.to_info() for p in self._rooms.list_participants(room_id)]
        self._broadcaster.publish(
            room_id,
            ParticipantListServerMessage(ParticipantListServerPayload(participants=participants)),
        )

    def join_room(self, connection: Connection, room_id: str, display_name: str) -> None:
        """
        Add the connection to a room and bring it up to date.

        Joining the room the connection is already in only refreshes its name.
        """
        if connection.room_id is not None and connection.room_id != room_id:
            self.leave_room(connection)

        snapshot = self._rooms.join(room_id, connection.connection_id, display_name)
        participant = next(
            p for p in snapshot.participants if p.connection_id == connection.connection_id
        )
        connection.room_id = room_id
        connection.display_name = participant.display_name
        self._broadcaster.subscribe(room_id, connection)
        logger.info(
            "%s (%s) joined room %s", participant.display_name, connection.connection_id, room_id
        )

        self._broadcaster.publish(
            room_id,
            PresenceSnapshotServerMessage(snapshot.to_payload()),
            origin_id=connection.connection_id,
        )
        self._broadcaster.publish(
            room_id,
            ParticipantJoinedServerMessage(
                NoticeServerPayload(display_name=participant.display_name, timestamp=now_ms())
            ),
            origin_id=connection.connection_id,
        )
        self._publish_participant_list(room_id)
        self._signal_event(
            ParticipantJoinedEvent(room_id, connection.connection_id, participant.display_name)
        )

    def leave_room(self, connection: Connection) -> None:
        """Remove the connection from its room. Does nothing if it is in none."""
        room_id = connection.room_id
        if room_id is None:
            return
        connection.room_id = None
        self._broadcaster.unsubscribe(room_id, connection.connection_id)
        result = self._rooms.leave(room_id, connection.connection_id)
        logger.info(
            "%s (%s) left room %s", result.display_name, connection.connection_id, room_id
        )
        self._signal_event(
            ParticipantLeftEvent(room_id, connection.connection_id, result.display_name)
        )

        if result.room_deleted:
            logger.info("Room %s is empty and was deleted", room_id)
            self._signal_event(RoomDeletedEvent(room_id))
            return

        self._broadcaster.publish(
            room_id,
            ParticipantLeftServerMessage(
                NoticeServerPayload(
                    display_name=result.display_name or connection.display_name or "Guest",
                    timestamp=now_ms(),
                )
            ),
        )
        self._publish_participant_list(room_id)

    async def change_source(self, connection: Connection, source: MediaSource) -> None:
        """Switch the connection's room to a new media source and relay it."""
        room_id = connection.room_id
        if room_id is None:
            return
        logger.info("Source change in %s: %s", room_id, source.kind.value)
        self._rooms.apply_source_change(room_id, source)
        self._broadcaster.publish(
            room_id, SourceChangedServerMessage(source), origin_id=connection.connection_id
        )
        if isinstance(source, SwarmSource):
            _ = await self._transfers.start_transfer(source.source_locator)

    def play(self, connection: Connection, current_time: float) -> None:
        """Record that the connection's player started and relay it."""
        room_id = connection.room_id
        if room_id is None:
            return
        logger.debug("Play in %s at %.1fs", room_id, current_time)
        self._rooms.apply_playback(room_id, current_time=current_time, is_playing=True)
        self._broadcaster.publish(
            room_id,
            PlaybackStartedServerMessage(PlaybackServerPayload(current_time=current_time)),
            origin_id=connection.connection_id,
        )

    def pause(self, connection: Connection, current_time: float) -> None:
        """Record that the connection's player paused and relay it."""
        room_id = connection.room_id
        if room_id is None:
            return
        logger.debug("Pause in %s at %.1fs", room_id, current_time)
        self._rooms.apply_playback(room_id, current_time=current_time, is_playing=False)
        self._broadcaster.publish(
            room_id,
            PlaybackPausedServerMessage(PlaybackServerPayload(current_time=current_time)),
            origin_id=connection.connection_id,
        )

    def seek(self, connection: Connection, current_time: float) -> None:
        """Record that the connection's player was scrubbed and relay it."""
        room_id = connection.room_id
        if room_id is None:
            return
        logger.debug("Seek in %s to %.1fs", room_id, current_time)
        self._rooms.apply_playback(room_id, current_time=current_time)
        self._broadcaster.publish(
            room_id,
            PlaybackSoughtServerMessage(PlaybackServerPayload(current_time=current_time)),
            origin_id=connection.connection_id,
        )

    def chat(self, connection: Connection, text: str) -> None:
        """Relay a chat message to the whole room, sender included."""
        room_id = connection.room_id
        if room_id is None:
            return
        self._broadcaster.publish(
            room_id,
            ChatServerMessage(
                ChatServerPayload(
                    display_name=connection.display_name or "Guest",
                    text=text,
                    timestamp=now_ms(),
                )
            ),
            origin_id=connection.connection_id,
        )
