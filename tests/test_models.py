"""Tests for media source validation and message decoding."""

import orjson
import pytest

from aiowatchparty.models.room import (
    ChangeSourceClientMessage,
    ChangeSourceClientPayload,
    ErrorServerMessage,
    ErrorServerPayload,
    ParticipantInfo,
    PlayClientMessage,
    PresenceSnapshotServerMessage,
    PresenceSnapshotServerPayload,
    SourceChangedServerMessage,
)
from aiowatchparty.models.source import (
    DirectUrlSource,
    EmbeddedVideoSource,
    LocalDeviceSource,
    MediaSource,
    SwarmSource,
    decode_source,
    parse_embedded_video_id,
)
from aiowatchparty.models.swarm import AddTransferRequest
from aiowatchparty.models.types import ClientMessage, ErrorCode, ServerMessage, SourceKind


@pytest.mark.parametrize(
    "raw",
    [
        "dQw4w9WgXcQ",
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://www.youtube.com/watch?list=abc&v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
        "https://youtube.com/shorts/dQw4w9WgXcQ",
        "  https://m.youtube.com/watch?v=dQw4w9WgXcQ  ",
    ],
)
def test_parse_embedded_video_id(raw: str) -> None:
    assert parse_embedded_video_id(raw) == "dQw4w9WgXcQ"


@pytest.mark.parametrize(
    "raw",
    ["", "not a link", "https://vimeo.com/12345", "https://youtu.be/short", "https://www.youtube.com/"],
)
def test_parse_embedded_video_id_rejects(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_embedded_video_id(raw)


def test_source_validation() -> None:
    with pytest.raises(ValueError):
        EmbeddedVideoSource(source_id="nope")
    with pytest.raises(ValueError):
        DirectUrlSource(source_url="ftp://files.example.com/film.mp4")
    with pytest.raises(ValueError):
        DirectUrlSource(source_url="/relative/film.mp4")
    with pytest.raises(ValueError):
        SwarmSource(source_locator="https://tracker.example.com/file.torrent")
    with pytest.raises(ValueError):
        SwarmSource(source_locator="magnet:?dn=missing-topic")


def test_sources_decode_by_kind() -> None:
    decoded = decode_source(
        {"source_kind": "direct-url", "source_url": "https://media.example.com/a.webm"}
    )
    assert decoded == DirectUrlSource(source_url="https://media.example.com/a.webm")
    assert decoded.kind is SourceKind.DIRECT_URL
    assert decode_source({"source_kind": "local-device"}) == LocalDeviceSource()


def test_change_source_intent_decodes_nested_source() -> None:
    raw = orjson.dumps(
        {
            "type": "room/change-source",
            "payload": {
                "room_id": "r",
                "source": {"source_kind": "swarm", "source_locator": "magnet:?xt=urn:btih:abc"},
            },
        }
    )
    message = ClientMessage.from_json(raw)

    assert isinstance(message, ChangeSourceClientMessage)
    assert message.payload.source == SwarmSource(source_locator="magnet:?xt=urn:btih:abc")


def test_change_source_intent_with_invalid_source_fails_to_decode() -> None:
    raw = orjson.dumps(
        {
            "type": "room/change-source",
            "payload": {"room_id": "r", "source": {"source_kind": "direct-url", "source_url": "nope"}},
        }
    )
    with pytest.raises(Exception):
        ClientMessage.from_json(raw)


def test_negative_playback_position_fails_to_decode() -> None:
    raw = orjson.dumps(
        {"type": "playback/play", "payload": {"room_id": "r", "current_time": -3}}
    )
    with pytest.raises(Exception):
        ClientMessage.from_json(raw)


def test_play_intent_wire_format() -> None:
    message = ClientMessage.from_json(
        '{"type": "playback/play", "payload": {"room_id": "r", "current_time": 12.5}}'
    )
    assert isinstance(message, PlayClientMessage)
    assert message.payload.current_time == 12.5


def test_source_changed_event_wire_format() -> None:
    message = SourceChangedServerMessage(EmbeddedVideoSource(source_id="dQw4w9WgXcQ"))
    data = orjson.loads(message.to_json())

    assert data == {
        "type": "room/source-changed",
        "payload": {"source_kind": "embedded-video", "source_id": "dQw4w9WgXcQ"},
    }
    assert ServerMessage.from_json(message.to_json()) == message


ALL_SOURCES = [
    EmbeddedVideoSource(),
    EmbeddedVideoSource(source_id="dQw4w9WgXcQ"),
    DirectUrlSource(source_url="https://media.example.com/a.webm"),
    LocalDeviceSource(),
    SwarmSource(source_locator="magnet:?xt=urn:btih:abc&dn=film"),
]


@pytest.mark.parametrize("source", ALL_SOURCES)
def test_presence_snapshot_carries_every_source_kind(source: MediaSource) -> None:
    message = PresenceSnapshotServerMessage(
        PresenceSnapshotServerPayload(
            source=source,
            current_time=4.0,
            is_playing=True,
            participants=[ParticipantInfo("c1", "Ada")],
        )
    )
    data = orjson.loads(message.to_json())

    assert data["payload"]["source"] == source.to_dict()
    assert data["payload"]["source"]["source_kind"] == source.kind.value
    assert ServerMessage.from_json(message.to_json()) == message


@pytest.mark.parametrize("source", ALL_SOURCES)
def test_change_source_intent_carries_every_source_kind(source: MediaSource) -> None:
    message = ChangeSourceClientMessage(ChangeSourceClientPayload(room_id="r", source=source))
    data = orjson.loads(message.to_json())

    assert data["payload"]["source"]["source_kind"] == source.kind.value
    decoded = ClientMessage.from_json(message.to_json())
    assert decoded == message
    assert type(decoded.payload.source) is type(source)  # type: ignore[attr-defined]


@pytest.mark.parametrize("source", ALL_SOURCES)
def test_source_changed_event_carries_every_source_kind(source: MediaSource) -> None:
    message = SourceChangedServerMessage(source)

    assert orjson.loads(message.to_json())["payload"] == source.to_dict()
    assert ServerMessage.from_json(message.to_json()) == message


def test_error_event_omits_missing_intent() -> None:
    message = ErrorServerMessage(
        ErrorServerPayload(code=ErrorCode.RATE_LIMITED, reason="slow down")
    )
    assert orjson.loads(message.to_json()) == {
        "type": "server/error",
        "payload": {"code": "rate-limited", "reason": "slow down"},
    }


def test_add_transfer_request_validates_locator() -> None:
    assert AddTransferRequest.from_dict({"locator": "magnet:?xt=urn:btih:abc"}).locator
    with pytest.raises(Exception):
        AddTransferRequest.from_dict({"locator": "http://example.com"})
    with pytest.raises(Exception):
        AddTransferRequest.from_dict({})
