"""Public interface for the watch party client package."""

from .client import (
    ChatCallback,
    ErrorCallback,
    NoticeCallback,
    ParticipantsCallback,
    SourceCallback,
    WatchPartyClient,
)
from .player import MediaPlayer
from .reconciler import ReconciliationEngine

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
