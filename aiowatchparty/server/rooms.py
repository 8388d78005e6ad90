"""
Authoritative in-memory room state.

The RoomRegistry owns every room and its participants. It is built for a single
event loop: each method runs to completion without awaiting, so two intents for
the same room can never interleave their read-modify-write sequences.

Rooms store discrete checkpoints (position + time of the last mutation) instead
of a ticking clock; live_snapshot() derives the position a participant should see
right now from the last checkpoint.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from aiowatchparty.models.room import ParticipantInfo, PresenceSnapshotServerPayload
from aiowatchparty.models.source import MediaSource, default_source

MAX_DISPLAY_NAME_LENGTH = 64
DEFAULT_DISPLAY_NAME = "Guest"
ROOM_ID_LENGTH = 8
UNJOINED_ROOM_TTL = 3600.0
"""Seconds a pre-created room nobody joined is kept."""

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    """A connection bound to a display name inside one room."""

    connection_id: str
    display_name: str

    def to_info(self) -> ParticipantInfo:
        """Convert to the wire representation."""
        return ParticipantInfo(connection_id=self.connection_id, display_name=self.display_name)


@dataclass
class Room:
    """State of a single room."""

    room_id: str
    source: MediaSource = field(default_factory=default_source)
    """Currently active media source, exactly one variant at a time."""
    current_time: float = 0.0
    """Position in seconds at the time of the last mutation."""
    is_playing: bool = False
    last_update: float = 0.0
    """Clock reading (seconds) of the last mutation."""
    users: dict[str, Participant] = field(default_factory=dict)
    """Participants keyed by connection id, in join order."""


@dataclass(frozen=True)
class RoomSnapshot:
    """Externally visible state of a room with the live playback position."""

    room_id: str
    source: MediaSource
    current_time: float
    is_playing: bool
    participants: tuple[Participant, ...]

    def to_payload(self) -> PresenceSnapshotServerPayload:
        """Convert to the presence snapshot payload."""
        return PresenceSnapshotServerPayload(
            source=self.source,
            current_time=self.current_time,
            is_playing=self.is_playing,
            participants=[p.to_info() for p in self.participants],
        )


@dataclass(frozen=True)
class LeaveResult:
    """Outcome of RoomRegistry.leave()."""

    remaining_count: int
    display_name: str | None
    """Name of the participant that left, None if it was not in the room."""

    @property
    def room_deleted(self) -> bool:
        """Whether the room is gone after this leave."""
        return self.remaining_count == 0


def live_snapshot(room: Room, now: float) -> RoomSnapshot:
    """
    Build the externally visible snapshot of ``room`` at clock reading ``now``.

    While playing, the stored position is advanced by the time elapsed since the
    last mutation. While paused, the stored position is returned unchanged.
    """
    current_time = room.current_time
    if room.is_playing:
        current_time += max(now - room.last_update, 0.0)
    return RoomSnapshot(
        room_id=room.room_id,
        source=room.source,
        current_time=current_time,
        is_playing=room.is_playing,
        participants=tuple(room.users.values()),
    )


def normalize_display_name(display_name: str | None) -> str:
    """Strip and truncate a display name, falling back to the default name."""
    name = (display_name or "").strip()[:MAX_DISPLAY_NAME_LENGTH]
    return name or DEFAULT_DISPLAY_NAME


class RoomRegistry:
    """Registry of all rooms, constructed once per server."""

    _rooms: dict[str, Room]
    _clock: Callable[[], float]
    _unjoined_room_ttl: float

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        *,
        unjoined_room_ttl: float = UNJOINED_ROOM_TTL,
    ) -> None:
        """
        Initialize an empty registry.

        Args:
            clock: Returns the current time in seconds. Only differences between
                readings are used.
            unjoined_room_ttl: Seconds after which a room that is still empty is
                dropped. Rooms are only empty between create_room and the first join.
        """
        self._rooms = {}
        self._clock = clock
        self._unjoined_room_ttl = unjoined_room_ttl

    def _new_room(self, room_id: str) -> Room:
        room = Room(room_id=room_id, last_update=self._clock())
        self._rooms[room_id] = room
        logger.debug("Created room %s", room_id)
        return room

    def _expire_unjoined_rooms(self) -> None:
        now = self._clock()
        expired = [
            room_id
            for room_id, room in self._rooms.items()
            if not room.users and now - room.last_update > self._unjoined_room_ttl
        ]
        for room_id in expired:
            del self._rooms[room_id]
            logger.debug("Expired room %s, nobody joined it", room_id)

    def create_room(self) -> str:
        """Pre-create an empty room under a fresh id and return the id."""
        self._expire_unjoined_rooms()
        room_id = uuid.uuid4().hex[:ROOM_ID_LENGTH]
        while room_id in self._rooms:
            room_id = uuid.uuid4().hex[:ROOM_ID_LENGTH]
        self._new_room(room_id)
        return room_id

    def join(self, room_id: str, connection_id: str, display_name: str) -> RoomSnapshot:
        """
        Register a participant, creating the room with default state if needed.

        Returns:
            The live snapshot of the room including the new participant.
        """
        self._expire_unjoined_rooms()
        room = self._rooms.get(room_id)
        if room is None:
            room = self._new_room(room_id)
        room.users[connection_id] = Participant(
            connection_id=connection_id, display_name=normalize_display_name(display_name)
        )
        logger.debug(
            "Connection %s joined room %s (%d participants)",
            connection_id,
            room_id,
            len(room.users),
        )
        return live_snapshot(room, self._clock())

    def leave(self, room_id: str, connection_id: str) -> LeaveResult:
        """
        Remove a participant, deleting the room once nobody is left.

        Unknown rooms or participants are ignored.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return LeaveResult(remaining_count=0, display_name=None)

        participant = room.users.pop(connection_id, None)
        remaining = len(room.users)
        if remaining == 0:
            del self._rooms[room_id]
            logger.debug("Deleted empty room %s", room_id)
        return LeaveResult(
            remaining_count=remaining,
            display_name=participant.display_name if participant else None,
        )

    def apply_source_change(self, room_id: str, source: MediaSource) -> None:
        """Replace the media source and rewind to a paused start."""
        room = self._rooms.get(room_id)
        if room is None:
            logger.debug("Ignoring source change for missing room %s", room_id)
            return
        room.source = source
        room.current_time = 0.0
        room.is_playing = False
        room.last_update = self._clock()

    def apply_playback(
        self,
        room_id: str,
        *,
        current_time: float | None = None,
        is_playing: bool | None = None,
    ) -> None:
        """Update the fields that were provided and checkpoint the room."""
        room = self._rooms.get(room_id)
        if room is None:
            logger.debug("Ignoring playback update for missing room %s", room_id)
            return
        if current_time is not None:
            if current_time < 0:
                raise ValueError(f"current_time must not be negative, got {current_time}")
            room.current_time = current_time
        if is_playing is not None:
            room.is_playing = is_playing
        room.last_update = self._clock()

    def list_participants(self, room_id: str) -> list[Participant]:
        """Participants of the room in join order, empty if the room does not exist."""
        room = self._rooms.get(room_id)
        if room is None:
            return []
        return list(room.users.values())

    def exists(self, room_id: str) -> bool:
        """Whether a room with this id exists."""
        return room_id in self._rooms

    def snapshot(self, room_id: str) -> RoomSnapshot | None:
        """Live snapshot of the room, None if it does not exist."""
        room = self._rooms.get(room_id)
        if room is None:
            return None
        return live_snapshot(room, self._clock())

    def get_room(self, room_id: str) -> Room | None:
        """Get the stored room state. Mutating it bypasses checkpointing."""
        return self._rooms.get(room_id)

    @property
    def room_ids(self) -> list[str]:
        """Ids of all rooms."""
        return list(self._rooms)
