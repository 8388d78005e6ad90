"""
Media source descriptors.

A room watches exactly one source at a time. Each kind of source is its own
dataclass carrying exactly the payload it needs; the ``source_kind`` field is the
discriminator used on the wire, so inconsistent combinations (an embedded video
with a swarm locator, a URL source without a URL) can not be decoded or built.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator
from yarl import URL

from .types import SourceKind

EMBEDDED_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
SHORT_LINK_HOSTS = ("youtu.be",)
WATCH_HOSTS = ("youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com")


@dataclass
class MediaSource(DataClassORJSONMixin):
    """Base class of all media source descriptors."""

    kind: ClassVar[SourceKind]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="source_kind", include_subtypes=True)


@dataclass
class EmbeddedVideoSource(MediaSource):
    """Video on an embeddable platform, no video picked yet if ``source_id`` is None."""

    kind: ClassVar[SourceKind] = SourceKind.EMBEDDED_VIDEO

    source_id: str | None = None
    """Platform video identifier."""
    source_kind: Literal["embedded-video"] = "embedded-video"

    def __post_init__(self) -> None:
        """Validate the video identifier."""
        if self.source_id is not None and not EMBEDDED_VIDEO_ID_RE.match(self.source_id):
            raise ValueError(f"Invalid embedded video id: {self.source_id!r}")


@dataclass
class DirectUrlSource(MediaSource):
    """Media file reachable over HTTP(S)."""

    kind: ClassVar[SourceKind] = SourceKind.DIRECT_URL

    source_url: str
    """Absolute http(s) URL of the media file."""
    source_kind: Literal["direct-url"] = "direct-url"

    def __post_init__(self) -> None:
        """Validate the media URL."""
        validate_direct_url(self.source_url)


@dataclass
class LocalDeviceSource(MediaSource):
    """Each participant picks a file from their own device."""

    kind: ClassVar[SourceKind] = SourceKind.LOCAL_DEVICE

    source_kind: Literal["local-device"] = "local-device"


@dataclass
class SwarmSource(MediaSource):
    """Media served by the swarm streaming gateway."""

    kind: ClassVar[SourceKind] = SourceKind.SWARM

    source_locator: str
    """Swarm locator (magnet link)."""
    source_kind: Literal["swarm"] = "swarm"

    def __post_init__(self) -> None:
        """Validate the swarm locator."""
        validate_swarm_locator(self.source_locator)


def validate_direct_url(raw: str) -> None:
    """Raise ValueError unless ``raw`` is an absolute http(s) URL."""
    try:
        url = URL(raw)
    except (TypeError, ValueError) as err:
        raise ValueError(f"Invalid media URL: {raw!r}") from err
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f"Media URL must be an absolute http(s) URL, got {raw!r}")


def validate_swarm_locator(raw: str) -> None:
    """Raise ValueError unless ``raw`` looks like a magnet link."""
    if not raw.startswith("magnet:?"):
        raise ValueError("Swarm locator must start with 'magnet:?'")
    if "xt=" not in raw:
        raise ValueError("Swarm locator has no exact topic (xt) parameter")


def parse_embedded_video_id(raw: str) -> str:
    """
    Extract an embedded video id from a pasted link or bare id.

    Accepts watch links (``?v=<id>``), short links (``youtu.be/<id>``),
    embed links (``/embed/<id>``) and bare 11 character ids.

    Raises:
        ValueError: If no id can be found.
    """
    raw = raw.strip()
    if EMBEDDED_VIDEO_ID_RE.match(raw):
        return raw

    try:
        url = URL(raw)
    except (TypeError, ValueError) as err:
        raise ValueError(f"Not a video link or id: {raw!r}") from err

    candidate: str | None = None
    if url.host in SHORT_LINK_HOSTS:
        candidate = url.path.lstrip("/").split("/", 1)[0]
    elif url.host in WATCH_HOSTS:
        if "v" in url.query:
            candidate = url.query["v"]
        elif url.path.startswith(("/embed/", "/shorts/", "/live/")):
            candidate = url.path.split("/")[2]

    if candidate is None or not EMBEDDED_VIDEO_ID_RE.match(candidate):
        raise ValueError(f"Not a video link or id: {raw!r}")
    return candidate


def default_source() -> MediaSource:
    """Return the source a freshly created room starts with."""
    return EmbeddedVideoSource()


def encode_source(source: MediaSource) -> dict[str, Any]:
    """Serialize a source with the fields of its concrete kind."""
    return source.to_dict()


def decode_source(data: dict[str, Any]) -> MediaSource:
    """Build the source variant named by ``source_kind``."""
    return MediaSource.from_dict(data)


def source_field() -> Any:
    """
    Dataclass field holding any source variant.

    A field annotated with the base class is packed with the base class schema,
    which has no fields, so the variant is packed and unpacked explicitly.
    """
    return field(metadata=field_options(serialize=encode_source, deserialize=decode_source))
