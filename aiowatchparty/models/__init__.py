"""Models for the watch party protocol."""

from __future__ import annotations

__all__ = [
    "ClientMessage",
    "DirectUrlSource",
    "EmbeddedVideoSource",
    "ErrorCode",
    "LocalDeviceSource",
    "MediaSource",
    "ServerMessage",
    "SourceKind",
    "SwarmSource",
    "SyncState",
    "TransferStatus",
    "now_ms",
    "parse_embedded_video_id",
    "room",
    "source",
    "swarm",
    "types",
]

import time

from . import room, source, swarm, types
from .source import (
    DirectUrlSource,
    EmbeddedVideoSource,
    LocalDeviceSource,
    MediaSource,
    SwarmSource,
    parse_embedded_video_id,
)
from .types import ClientMessage, ErrorCode, ServerMessage, SourceKind, SyncState, TransferStatus


def now_ms() -> int:
    """Return the current Unix time in milliseconds, as used by notices and chat."""
    return int(time.time() * 1000)
