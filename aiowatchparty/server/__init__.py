"""
Watch party server keeping a room of participants in sync.

WatchPartyServer is the core of the shared watching experience, responsible for:
- Holding the authoritative playback state of every room
- Relaying playback, source and chat events between participants
- Streaming media from a peer swarm over HTTP
"""

__all__ = [
    "ByteStreamResponse",
    "Connection",
    "ParticipantJoinedEvent",
    "ParticipantLeftEvent",
    "RoomBroadcaster",
    "RoomDeletedEvent",
    "RoomRegistry",
    "RoomSnapshot",
    "SwarmBackend",
    "SwarmFile",
    "SwarmHandle",
    "SwarmStats",
    "TransferManager",
    "WatchPartyEvent",
    "WatchPartyServer",
    "create_app",
    "live_snapshot",
]

from .broadcast import RoomBroadcaster
from .connection import Connection
from .http import create_app
from .rooms import RoomRegistry, RoomSnapshot, live_snapshot
from .server import (
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    RoomDeletedEvent,
    WatchPartyEvent,
    WatchPartyServer,
)
from .swarm import (
    ByteStreamResponse,
    SwarmBackend,
    SwarmFile,
    SwarmHandle,
    SwarmStats,
    TransferManager,
)
