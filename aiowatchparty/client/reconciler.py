"""
Client side reconciliation of remote playback commands with a local player.

Applying a remote command makes the local player fire the same change
notifications a user action would. To keep those from being sent back to the room
as new intents (and bouncing between participants forever) the engine is a small
state machine:

- IDLE: local player events are translated into intents.
- APPLYING_REMOTE: entered before a remote command is issued to the player and
  left once the settle window has passed; local events are dropped.

A newer remote command re-arms the settle window. Player back-ends that do not
report scrubbing on their own are polled for position jumps.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from aiowatchparty.models.room import (
    PauseClientMessage,
    PlaybackClientPayload,
    PlaybackCommandMessage,
    PlaybackPausedServerMessage,
    PlaybackSoughtServerMessage,
    PlaybackStartedServerMessage,
    PlayClientMessage,
    PresenceSnapshotServerPayload,
    SeekClientMessage,
)
from aiowatchparty.models.source import EmbeddedVideoSource, MediaSource
from aiowatchparty.models.types import ClientMessage, SyncState

from .player import MediaPlayer

DEFAULT_SETTLE_WINDOW = 0.5
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_SEEK_THRESHOLD = 2.0

logger = logging.getLogger(__name__)

IntentSender = Callable[[ClientMessage], Awaitable[None] | None]
SourceLoader = Callable[[MediaSource], Awaitable[None] | None]


def has_shared_media(source: MediaSource) -> bool:
    """Whether the source names something to play (a default room has nothing)."""
    return not (isinstance(source, EmbeddedVideoSource) and source.source_id is None)


class ReconciliationEngine:
    """Applies remote commands to one local player and reports its local changes."""

    def __init__(
        self,
        room_id: str,
        send_intent: IntentSender,
        *,
        load_source: SourceLoader | None = None,
        settle_window: float = DEFAULT_SETTLE_WINDOW,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        seek_threshold: float = DEFAULT_SEEK_THRESHOLD,
    ) -> None:
        """
        Create an engine for one room.

        Args:
            room_id: Room the intents are addressed to.
            send_intent: Called with every intent to send, may be a coroutine function.
            load_source: Called to switch the local player to a new source, may be a
                coroutine function. The host is expected to attach the new player.
            settle_window: Seconds local events stay suppressed after a remote command.
            poll_interval: Seconds between position polls for players without
                native seek events.
            seek_threshold: Position jump in seconds between polls treated as a seek.
        """
        if settle_window <= 0:
            raise ValueError("settle_window must be positive")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._room_id = room_id
        self._send_intent = send_intent
        self._load_source = load_source
        self._settle_window = settle_window
        self._poll_interval = poll_interval
        self._seek_threshold = seek_threshold
        self._state = SyncState.IDLE
        self._settle_handle: asyncio.TimerHandle | None = None
        self._player: MediaPlayer | None = None
        self._last_position = 0.0
        self._poll_task: asyncio.Task[None] | None = None
        self._pending_sync: tuple[float, bool] | None = None
        """Position and play state to apply once a player is attached."""
        self._send_tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> SyncState:
        """Current state of the engine."""
        return self._state

    @property
    def player(self) -> MediaPlayer | None:
        """The attached local player."""
        return self._player

    @property
    def room_id(self) -> str:
        """Room the intents are addressed to."""
        return self._room_id

    # ------------------------------------------------------------------
    # Player lifecycle
    # ------------------------------------------------------------------
    def attach_player(self, player: MediaPlayer) -> None:
        """Drive ``player`` from now on, applying any state received before it existed."""
        self.detach_player()
        self._player = player
        self._last_position = player.current_position()
        logger.debug("Attached player %s", type(player).__name__)

        if self._pending_sync is not None:
            position, playing = self._pending_sync
            self._pending_sync = None
            self._apply_to_player(position, play=playing if playing else None)

        if not player.native_seek_events:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def detach_player(self) -> None:
        """Stop driving the current player."""
        if self._poll_task is not None:
            _ = self._poll_task.cancel()
            self._poll_task = None
        self._player = None

    async def close(self) -> None:
        """Detach the player and cancel timers and pending sends."""
        poll_task = self._poll_task
        self.detach_player()
        if poll_task is not None:
            with suppress(asyncio.CancelledError):
                await poll_task
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        self._state = SyncState.IDLE
        for task in list(self._send_tasks):
            _ = task.cancel()

    # ------------------------------------------------------------------
    # Remote commands
    # ------------------------------------------------------------------
    def _begin_remote(self) -> None:
        """Enter APPLYING_REMOTE and (re)start the settle window."""
        if self._settle_handle is not None:
            self._settle_handle.cancel()
        self._state = SyncState.APPLYING_REMOTE
        self._settle_handle = asyncio.get_running_loop().call_later(
            self._settle_window, self._end_remote
        )

    def _end_remote(self) -> None:
        self._settle_handle = None
        self._state = SyncState.IDLE
        logger.debug("Settle window over, reporting local events again")

    def _apply_to_player(self, position: float, *, play: bool | None) -> None:
        """Seek and optionally play or pause the player under suppression."""
        player = self._player
        if player is None:
            self._pending_sync = (position, bool(play))
            logger.debug("No player attached, keeping position %.1fs for later", position)
            return
        self._begin_remote()
        player.seek(position)
        if play is True:
            player.play()
        elif play is False:
            player.pause()
        self._last_position = position

    def apply_remote_command(self, message: PlaybackCommandMessage) -> None:
        """Apply a playback command another participant caused."""
        position = message.payload.current_time
        match message:
            case PlaybackStartedServerMessage():
                logger.debug("Remote play at %.1fs", position)
                self._apply_to_player(position, play=True)
            case PlaybackPausedServerMessage():
                logger.debug("Remote pause at %.1fs", position)
                self._apply_to_player(position, play=False)
            case PlaybackSoughtServerMessage():
                logger.debug("Remote seek to %.1fs", position)
                if self._player is None and self._pending_sync is not None:
                    self._pending_sync = (position, self._pending_sync[1])
                else:
                    self._apply_to_player(position, play=None)

    async def apply_remote_source(self, source: MediaSource) -> None:
        """Switch to a source another participant picked, starting paused at zero."""
        logger.debug("Remote source change: %s", source.kind.value)
        self._begin_remote()
        self._pending_sync = None
        self._last_position = 0.0
        await self._call_loader(source)

    async def apply_presence_snapshot(self, snapshot: PresenceSnapshotServerPayload) -> None:
        """Catch up with a room joined late: load its source, seek, and maybe play."""
        if not has_shared_media(snapshot.source):
            logger.debug("Joined room has no media yet")
            return
        self._begin_remote()
        await self._call_loader(snapshot.source)
        self._apply_to_player(
            snapshot.current_time, play=True if snapshot.is_playing else None
        )

    async def _call_loader(self, source: MediaSource) -> None:
        if self._load_source is None:
            return
        result = self._load_source(source)
        if asyncio.iscoroutine(result):
            await result

    # ------------------------------------------------------------------
    # Local events
    # ------------------------------------------------------------------
    def _emit(self, intent: ClientMessage) -> None:
        result = self._send_intent(intent)
        if asyncio.iscoroutine(result):
            task = asyncio.get_running_loop().create_task(self._await_send(result))
            self._send_tasks.add(task)
            task.add_done_callback(self._send_tasks.discard)

    async def _await_send(self, send: Awaitable[None]) -> None:
        try:
            await send
        except Exception:
            logger.exception("Failed to send intent")

    def _local_event(self, name: str) -> bool:
        if self._state is SyncState.APPLYING_REMOTE:
            logger.debug("Suppressed local %s caused by a remote command", name)
            return False
        return True

    def on_local_play(self, position: float | None = None) -> bool:
        """
        Report that the local player started.

        Returns:
            True if a play intent was sent, False if the event was suppressed.
        """
        if not self._local_event("play"):
            return False
        position = self._position(position)
        self._emit(PlayClientMessage(PlaybackClientPayload(self._room_id, position)))
        return True

    def on_local_pause(self, position: float | None = None) -> bool:
        """Report that the local player paused. Returns whether an intent was sent."""
        if not self._local_event("pause"):
            return False
        position = self._position(position)
        self._emit(PauseClientMessage(PlaybackClientPayload(self._room_id, position)))
        return True

    def on_local_seek(self, position: float | None = None) -> bool:
        """Report that the user scrubbed the local player. Returns whether an intent was sent."""
        position = self._position(position)
        self._last_position = position
        if not self._local_event("seek"):
            return False
        self._emit(SeekClientMessage(PlaybackClientPayload(self._room_id, position)))
        return True

    def _position(self, position: float | None) -> float:
        if position is not None:
            return max(position, 0.0)
        if self._player is None:
            return 0.0
        return max(self._player.current_position(), 0.0)

    # ------------------------------------------------------------------
    # Seek detection
    # ------------------------------------------------------------------
    def poll_position(self) -> bool:
        """
        Compare the player's position with the previous poll.

        A jump larger than the seek threshold outside of a settle window is reported
        as a local seek. The observed position is recorded on every poll.

        Returns:
            True if a seek intent was sent.
        """
        if self._player is None:
            return False
        position = self._player.current_position()
        jumped = abs(position - self._last_position) > self._seek_threshold
        self._last_position = position
        if not jumped or self._state is SyncState.APPLYING_REMOTE:
            return False
        logger.debug("Detected local seek to %.1fs", position)
        self._emit(SeekClientMessage(PlaybackClientPayload(self._room_id, max(position, 0.0))))
        return True

    async def _poll_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._poll_interval)
                try:
                    _ = self.poll_position()
                except Exception:
                    logger.exception("Failed to poll player position")
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass
