"""Base message classes and enum types used by aiowatchparty."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for client messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for server messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class SourceKind(Enum):
    """Kind of media a room is watching."""

    EMBEDDED_VIDEO = "embedded-video"
    """Video hosted on an embeddable video platform, addressed by its id."""
    DIRECT_URL = "direct-url"
    """A media file reachable over plain HTTP(S)."""
    LOCAL_DEVICE = "local-device"
    """
    Every participant plays a file from their own device.

    Nothing is shared except the playback position.
    """
    SWARM = "swarm"
    """Media fetched from a peer swarm by the server's streaming gateway."""


class TransferStatus(Enum):
    """States of the swarm transfer."""

    IDLE = "idle"
    CONNECTING = "connecting"
    DOWNLOADING = "downloading"
    READY = "ready"
    NO_VIDEO = "no-video"
    ERROR = "error"


class SyncState(Enum):
    """States of a client's reconciliation engine."""

    IDLE = "idle"
    """Local player events are translated into intents."""
    APPLYING_REMOTE = "applying-remote"
    """
    A remote command is being applied.

    Local player events are suppressed until the settle window elapses.
    """


class ErrorCode(Enum):
    """Codes carried by server/error messages."""

    INVALID_INPUT = "invalid-input"
    RATE_LIMITED = "rate-limited"
    NOT_IN_ROOM = "not-in-room"
