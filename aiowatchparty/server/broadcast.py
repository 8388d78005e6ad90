"""
Routing of server messages to the participants of a room.

Playback and source events are relayed to every participant except the one whose
intent caused them. Echoing them back would make the originator re-apply its own
command, trip its player's change notification and emit the intent again.
The presence snapshot only goes to the participant that just joined; everything
else (participant list, join/leave notices, chat) goes to the whole room.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from aiowatchparty.models.room import (
    PlaybackPausedServerMessage,
    PlaybackSoughtServerMessage,
    PlaybackStartedServerMessage,
    PresenceSnapshotServerMessage,
    SourceChangedServerMessage,
)
from aiowatchparty.models.types import ServerMessage

logger = logging.getLogger(__name__)

ORIGIN_EXCLUDED_MESSAGES: tuple[type[ServerMessage], ...] = (
    SourceChangedServerMessage,
    PlaybackStartedServerMessage,
    PlaybackPausedServerMessage,
    PlaybackSoughtServerMessage,
)
ORIGIN_ONLY_MESSAGES: tuple[type[ServerMessage], ...] = (PresenceSnapshotServerMessage,)


class MessageSink(Protocol):
    """Anything that can queue a server message for one participant."""

    @property
    def connection_id(self) -> str:
        """Identifier of the participant's connection."""
        ...

    def send_message(self, message: ServerMessage) -> None:
        """Queue ``message`` for delivery."""
        ...


def route(message: ServerMessage, origin_id: str | None, members: Iterable[str]) -> list[str]:
    """
    Return the connection ids that must receive ``message``.

    Args:
        message: The event to deliver.
        origin_id: Connection whose intent caused the event, None for system events.
        members: Connection ids of the room in join order.
    """
    if isinstance(message, ORIGIN_ONLY_MESSAGES):
        if origin_id is None:
            raise ValueError(f"{type(message).__name__} needs an origin connection")
        return [m for m in members if m == origin_id]
    if isinstance(message, ORIGIN_EXCLUDED_MESSAGES):
        return [m for m in members if m != origin_id]
    return list(members)


class RoomBroadcaster:
    """Keeps track of which sinks belong to which room and delivers events."""

    _rooms: dict[str, dict[str, MessageSink]]

    def __init__(self) -> None:
        """Initialize without any rooms."""
        self._rooms = {}

    def subscribe(self, room_id: str, sink: MessageSink) -> None:
        """Start delivering room events to ``sink``."""
        self._rooms.setdefault(room_id, {})[sink.connection_id] = sink

    def unsubscribe(self, room_id: str, connection_id: str) -> None:
        """Stop delivering room events to the connection. Unknown ids are ignored."""
        sinks = self._rooms.get(room_id)
        if sinks is None:
            return
        sinks.pop(connection_id, None)
        if not sinks:
            del self._rooms[room_id]

    def members(self, room_id: str) -> list[str]:
        """Connection ids subscribed to the room."""
        return list(self._rooms.get(room_id, {}))

    def publish(self, room_id: str, message: ServerMessage, origin_id: str | None = None) -> int:
        """
        Deliver ``message`` to the room following the routing rule.

        Returns:
            Number of sinks the message was queued for.
        """
        sinks = self._rooms.get(room_id)
        if not sinks:
            logger.debug("No subscribers in room %s for %s", room_id, type(message).__name__)
            return 0
        recipients = route(message, origin_id, sinks)
        for connection_id in recipients:
            sinks[connection_id].send_message(message)
        logger.debug(
            "Published %s in room %s to %d of %d participants",
            type(message).__name__,
            room_id,
            len(recipients),
            len(sinks),
        )
        return len(recipients)
