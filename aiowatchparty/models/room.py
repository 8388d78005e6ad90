"""
Room messages for the watch party protocol.

This module contains the intents a participant sends to the server and the events
the server relays to the participants of a room: presence, playback commands,
source changes and chat.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .source import MediaSource, source_field
from .types import ClientMessage, ErrorCode, ServerMessage


@dataclass
class ParticipantInfo(DataClassORJSONMixin):
    """A participant of a room."""

    connection_id: str
    """Identifier of the participant's connection."""
    display_name: str
    """Name shown to the other participants."""


# Client -> Server: room/join
@dataclass
class JoinClientPayload(DataClassORJSONMixin):
    """Room to join and the name to join it with."""

    room_id: str
    display_name: str


@dataclass
class JoinClientMessage(ClientMessage):
    """Message sent by the client to join a room."""

    payload: JoinClientPayload
    type: Literal["room/join"] = "room/join"


# Client -> Server: room/leave
@dataclass
class LeaveClientMessage(ClientMessage):
    """Message sent by the client to leave its room without disconnecting."""

    type: Literal["room/leave"] = "room/leave"


# Client -> Server: room/change-source
@dataclass
class ChangeSourceClientPayload(DataClassORJSONMixin):
    """New media source for the room."""

    room_id: str
    source: MediaSource = source_field()


@dataclass
class ChangeSourceClientMessage(ClientMessage):
    """Message sent by the client when it changes what the room is watching."""

    payload: ChangeSourceClientPayload
    type: Literal["room/change-source"] = "room/change-source"


# Client -> Server: playback/play, playback/pause, playback/seek
@dataclass
class PlaybackClientPayload(DataClassORJSONMixin):
    """Playback position reported with a play, pause or seek intent."""

    room_id: str
    current_time: float
    """Position of the local player in seconds."""

    def __post_init__(self) -> None:
        """Validate the position."""
        if self.current_time < 0:
            raise ValueError(f"current_time must not be negative, got {self.current_time}")


@dataclass
class PlayClientMessage(ClientMessage):
    """Message sent by the client when its player started."""

    payload: PlaybackClientPayload
    type: Literal["playback/play"] = "playback/play"


@dataclass
class PauseClientMessage(ClientMessage):
    """Message sent by the client when its player paused."""

    payload: PlaybackClientPayload
    type: Literal["playback/pause"] = "playback/pause"


@dataclass
class SeekClientMessage(ClientMessage):
    """Message sent by the client when its player was scrubbed."""

    payload: PlaybackClientPayload
    type: Literal["playback/seek"] = "playback/seek"


# Client -> Server: chat/send
@dataclass
class ChatClientPayload(DataClassORJSONMixin):
    """Chat text sent to the room."""

    room_id: str
    text: str


@dataclass
class ChatClientMessage(ClientMessage):
    """Message sent by the client to chat with the room."""

    payload: ChatClientPayload
    type: Literal["chat/send"] = "chat/send"


# Server -> Client: room/presence-snapshot
@dataclass
class PresenceSnapshotServerPayload(DataClassORJSONMixin):
    """Full room state, with the live playback position."""

    source: MediaSource = source_field()
    current_time: float
    is_playing: bool
    participants: list[ParticipantInfo]


@dataclass
class PresenceSnapshotServerMessage(ServerMessage):
    """Message sent by the server only to a participant that just joined."""

    payload: PresenceSnapshotServerPayload
    type: Literal["room/presence-snapshot"] = "room/presence-snapshot"


# Server -> Client: room/participant-list
@dataclass
class ParticipantListServerPayload(DataClassORJSONMixin):
    """Participants of the room in join order."""

    participants: list[ParticipantInfo]


@dataclass
class ParticipantListServerMessage(ServerMessage):
    """Message sent by the server to everybody in the room after a join or leave."""

    payload: ParticipantListServerPayload
    type: Literal["room/participant-list"] = "room/participant-list"


# Server -> Client: room/participant-joined, room/participant-left
@dataclass
class NoticeServerPayload(DataClassORJSONMixin):
    """System notice about a participant."""

    display_name: str
    timestamp: int
    """Unix time in milliseconds."""


@dataclass
class ParticipantJoinedServerMessage(ServerMessage):
    """Notice that a participant joined."""

    payload: NoticeServerPayload
    type: Literal["room/participant-joined"] = "room/participant-joined"


@dataclass
class ParticipantLeftServerMessage(ServerMessage):
    """Notice that a participant left."""

    payload: NoticeServerPayload
    type: Literal["room/participant-left"] = "room/participant-left"


# Server -> Client: room/source-changed
@dataclass
class SourceChangedServerMessage(ServerMessage):
    """Message relayed when another participant changed the media source."""

    payload: MediaSource = source_field()
    type: Literal["room/source-changed"] = "room/source-changed"


# Server -> Client: playback/started, playback/paused, playback/sought
@dataclass
class PlaybackServerPayload(DataClassORJSONMixin):
    """Position another participant's player was at."""

    current_time: float


@dataclass
class PlaybackStartedServerMessage(ServerMessage):
    """Another participant pressed play."""

    payload: PlaybackServerPayload
    type: Literal["playback/started"] = "playback/started"


@dataclass
class PlaybackPausedServerMessage(ServerMessage):
    """Another participant pressed pause."""

    payload: PlaybackServerPayload
    type: Literal["playback/paused"] = "playback/paused"


@dataclass
class PlaybackSoughtServerMessage(ServerMessage):
    """Another participant scrubbed the position."""

    payload: PlaybackServerPayload
    type: Literal["playback/sought"] = "playback/sought"


# Server -> Client: chat/message
@dataclass
class ChatServerPayload(DataClassORJSONMixin):
    """Chat message as seen by every participant, sender included."""

    display_name: str
    text: str
    timestamp: int
    """Unix time in milliseconds."""


@dataclass
class ChatServerMessage(ServerMessage):
    """Chat message relayed to the room."""

    payload: ChatServerPayload
    type: Literal["chat/message"] = "chat/message"


# Server -> Client: server/error
@dataclass
class ErrorServerPayload(DataClassORJSONMixin):
    """Reason an intent was rejected."""

    code: ErrorCode
    reason: str
    intent: str | None = None
    """Type of the rejected intent, if it could be decoded."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class ErrorServerMessage(ServerMessage):
    """Message sent by the server to the originator of a rejected intent."""

    payload: ErrorServerPayload
    type: Literal["server/error"] = "server/error"


PlaybackCommandMessage = (
    PlaybackStartedServerMessage | PlaybackPausedServerMessage | PlaybackSoughtServerMessage
)
"""Remote playback commands applied by the client reconciliation engine."""
