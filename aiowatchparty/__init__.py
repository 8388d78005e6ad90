"""aiowatchparty: keep a room of people watching the same media in sync."""

from __future__ import annotations

# Re-export client library for easy import
from aiowatchparty.client import (
    ChatCallback,
    ErrorCallback,
    MediaPlayer,
    NoticeCallback,
    ParticipantsCallback,
    ReconciliationEngine,
    SourceCallback,
    WatchPartyClient,
)

__all__ = [
    "ChatCallback",
    "ErrorCallback",
    "MediaPlayer",
    "NoticeCallback",
    "ParticipantsCallback",
    "ReconciliationEngine",
    "SourceCallback",
    "WatchPartyClient",
]
