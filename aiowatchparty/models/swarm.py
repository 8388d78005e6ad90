"""Payloads of the swarm streaming gateway's HTTP control plane."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .source import validate_swarm_locator
from .types import TransferStatus


@dataclass
class SwarmFileInfo(DataClassORJSONMixin):
    """A file listed in the swarm's metadata."""

    name: str
    length: int
    """Size in bytes."""


@dataclass
class AddTransferRequest(DataClassORJSONMixin):
    """Body of POST /api/swarm/add."""

    locator: str

    def __post_init__(self) -> None:
        """Validate the locator."""
        validate_swarm_locator(self.locator)


@dataclass
class AddTransferResponse(DataClassORJSONMixin):
    """Answer to POST /api/swarm/add."""

    status: Literal["adding", "already-active"]
    ok: bool = True


@dataclass
class TransferStatusPayload(DataClassORJSONMixin):
    """Snapshot of the active transfer, answer to GET /api/swarm/status."""

    status: TransferStatus
    progress: float = 0.0
    """Percentage of the selected file downloaded, two decimals."""
    download_rate: int = 0
    """Bytes per second."""
    upload_rate: int = 0
    """Bytes per second."""
    peer_count: int = 0
    downloaded_bytes: int = 0
    ready: bool = False
    """True once a byte-range read of the selected file can return data."""
    selected_file: SwarmFileInfo | None = None
    total_bytes: int | None = None
    estimated_seconds_remaining: float | None = None
    swarm_name: str | None = None
    files: list[SwarmFileInfo] = field(default_factory=list)
    error: str | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
