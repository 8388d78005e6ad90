"""Interface the reconciliation engine uses to drive a local media player."""

from __future__ import annotations

from typing import Protocol


class MediaPlayer(Protocol):
    """
    A local player back-end (embedded video, direct stream or swarm stream).

    Every back-end implements all four operations explicitly; the engine never
    probes for optional methods.
    """

    native_seek_events: bool
    """
    True if the back-end reports user scrubbing on its own.

    Back-ends without it are polled for position jumps.
    """

    def seek(self, position: float) -> None:
        """Jump to ``position`` seconds."""
        ...

    def play(self) -> None:
        """Start or resume playback."""
        ...

    def pause(self) -> None:
        """Pause playback."""
        ...

    def current_position(self) -> float:
        """Current position in seconds."""
        ...
