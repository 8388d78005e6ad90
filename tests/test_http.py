"""Integration tests for the HTTP control plane and the websocket channel."""

import asyncio

import orjson
from aiohttp import ClientWebSocketResponse
from aiohttp.test_utils import TestClient
from conftest import MAGNET, FakeBackend, FakeSwarm, wait_for_transfer

from aiowatchparty.models.room import (
    ChatServerMessage,
    ErrorServerMessage,
    ParticipantJoinedServerMessage,
    ParticipantListServerMessage,
    PlaybackStartedServerMessage,
    PresenceSnapshotServerMessage,
    SourceChangedServerMessage,
)
from aiowatchparty.models.types import ErrorCode, ServerMessage
from aiowatchparty.server import SwarmFile, WatchPartyServer
from aiowatchparty.server.connection import CHAT_RATE_LIMIT


async def _receive(ws: ClientWebSocketResponse) -> ServerMessage:
    msg = await asyncio.wait_for(ws.receive_str(), timeout=2)
    return ServerMessage.from_json(msg)


async def _receive_until(ws: ClientWebSocketResponse, message_type: type) -> ServerMessage:
    while True:
        message = await _receive(ws)
        if isinstance(message, message_type):
            return message


async def _join(http_client: TestClient, room_id: str, name: str) -> ClientWebSocketResponse:
    ws = await http_client.ws_connect("/ws")
    await ws.send_json({"type": "room/join", "payload": {"room_id": room_id, "display_name": name}})
    await _receive_until(ws, ParticipantListServerMessage)
    return ws


async def test_create_and_inspect_room(http_client: TestClient) -> None:
    response = await http_client.post("/api/rooms")
    assert response.status == 200
    room_id = (await response.json())["room_id"]

    response = await http_client.get(f"/api/rooms/{room_id}")
    assert response.status == 200
    data = await response.json()
    assert data["exists"] is True
    assert data["participants"] == []
    assert data["source"]["source_kind"] == "embedded-video"
    assert data["is_playing"] is False

    response = await http_client.get("/api/rooms/missing")
    assert response.status == 404
    assert await response.json() == {"exists": False}


async def test_cors_headers(http_client: TestClient) -> None:
    response = await http_client.options("/api/swarm/add")
    assert response.status == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"

    response = await http_client.get("/api/swarm/status")
    assert response.headers["Access-Control-Allow-Origin"] == "*"


async def test_swarm_transfer_lifecycle(
    http_client: TestClient, server: WatchPartyServer, video_swarm: FakeSwarm
) -> None:
    response = await http_client.get("/api/swarm/status")
    assert (await response.json())["status"] == "idle"

    response = await http_client.get("/api/swarm/stream")
    assert response.status == 404

    response = await http_client.post("/api/swarm/add", json={"locator": MAGNET})
    assert await response.json() == {"status": "adding", "ok": True}
    await wait_for_transfer(server.transfers)

    response = await http_client.post("/api/swarm/add", json={"locator": MAGNET})
    assert (await response.json())["status"] == "already-active"

    response = await http_client.get("/api/swarm/status")
    status = await response.json()
    assert status["status"] == "ready"
    assert status["ready"] is True
    assert status["selected_file"] == {"name": "movie.mp4", "length": 10_000}

    response = await http_client.get("/api/swarm/stream", headers={"Range": "bytes=1000-1999"})
    assert response.status == 206
    assert response.headers["Content-Range"] == "bytes 1000-1999/10000"
    assert response.headers["Content-Length"] == "1000"
    assert response.headers["Accept-Ranges"] == "bytes"
    assert await response.read() == video_swarm.content[1000:2000]

    response = await http_client.get("/api/swarm/stream")
    assert response.status == 200
    assert response.headers["Content-Length"] == "10000"
    assert await response.read() == video_swarm.content

    response = await http_client.get("/api/swarm/stream", headers={"Range": "bytes=20000-"})
    assert response.status == 416
    assert response.headers["Content-Range"] == "bytes */10000"

    response = await http_client.get("/api/swarm/stream", headers={"Range": "lines=1-2"})
    assert response.status == 400

    response = await http_client.post("/api/swarm/remove")
    assert await response.json() == {"ok": True}
    assert video_swarm.closed
    response = await http_client.get("/api/swarm/status")
    assert (await response.json())["status"] == "idle"


async def test_stream_not_ready_asks_to_retry(
    http_client: TestClient, server: WatchPartyServer, backend: FakeBackend
) -> None:
    backend.add(MAGNET, FakeSwarm([SwarmFile(0, "movie.mp4", 1_000_000)], downloaded_bytes=0))
    await http_client.post("/api/swarm/add", json={"locator": MAGNET})
    await wait_for_transfer(server.transfers)

    response = await http_client.get("/api/swarm/stream")
    assert response.status == 503
    assert response.headers["Retry-After"] == "2"


async def test_add_transfer_rejects_bad_locator(http_client: TestClient) -> None:
    response = await http_client.post("/api/swarm/add", json={"locator": "http://nope"})
    assert response.status == 400
    response = await http_client.post("/api/swarm/add", data=b"not json")
    assert response.status == 400


async def test_websocket_join_and_relay(http_client: TestClient) -> None:
    ada = await http_client.ws_connect("/ws")
    await ada.send_json({"type": "room/join", "payload": {"room_id": "r", "display_name": "Ada"}})
    snapshot = await _receive(ada)
    assert isinstance(snapshot, PresenceSnapshotServerMessage)
    assert [p.display_name for p in snapshot.payload.participants] == ["Ada"]
    joined = await _receive(ada)
    assert isinstance(joined, ParticipantJoinedServerMessage)
    await _receive_until(ada, ParticipantListServerMessage)

    grace = await _join(http_client, "r", "Grace")
    await _receive_until(ada, ParticipantListServerMessage)

    await ada.send_json({"type": "playback/play", "payload": {"room_id": "r", "current_time": 12.0}})
    started = await _receive(grace)
    assert isinstance(started, PlaybackStartedServerMessage)
    assert started.payload.current_time == 12.0

    await grace.send_json(
        {
            "type": "room/change-source",
            "payload": {
                "room_id": "r",
                "source": {"source_kind": "direct-url", "source_url": "https://cdn.example.com/a.mp4"},
            },
        }
    )
    changed = await _receive(ada)
    assert isinstance(changed, SourceChangedServerMessage)
    assert changed.payload.source_url == "https://cdn.example.com/a.mp4"  # type: ignore[attr-defined]

    response = await http_client.get("/api/rooms/r")
    assert (await response.json())["source"] == {
        "source_kind": "direct-url",
        "source_url": "https://cdn.example.com/a.mp4",
    }

    await ada.send_json({"type": "chat/send", "payload": {"room_id": "r", "text": " hi "}})
    for ws in (ada, grace):
        chat = await _receive(ws)
        assert isinstance(chat, ChatServerMessage)
        assert chat.payload.text == "hi"
        assert chat.payload.display_name == "Ada"

    await ada.close()
    await grace.close()


async def test_websocket_rejects_bad_intents(http_client: TestClient) -> None:
    ws = await _join(http_client, "r", "Ada")

    await ws.send_str("{not json")
    error = await _receive(ws)
    assert isinstance(error, ErrorServerMessage)
    assert error.payload.code is ErrorCode.INVALID_INPUT

    await ws.send_str(
        orjson.dumps(
            {"type": "playback/seek", "payload": {"room_id": "elsewhere", "current_time": 3}}
        ).decode()
    )
    error = await _receive(ws)
    assert isinstance(error, ErrorServerMessage)
    assert error.payload.code is ErrorCode.NOT_IN_ROOM

    await ws.send_json({"type": "chat/send", "payload": {"room_id": "r", "text": "x" * 5000}})
    error = await _receive(ws)
    assert isinstance(error, ErrorServerMessage)
    assert error.payload.code is ErrorCode.INVALID_INPUT
    assert error.payload.intent == "chat/send"

    await ws.close()


async def test_chat_rate_limit(http_client: TestClient) -> None:
    ws = await _join(http_client, "r", "Ada")

    for i in range(CHAT_RATE_LIMIT + 1):
        await ws.send_json({"type": "chat/send", "payload": {"room_id": "r", "text": f"m{i}"}})

    received = [await _receive(ws) for _ in range(CHAT_RATE_LIMIT + 1)]
    assert all(isinstance(m, ChatServerMessage) for m in received[:CHAT_RATE_LIMIT])
    assert isinstance(received[-1], ErrorServerMessage)
    assert received[-1].payload.code is ErrorCode.RATE_LIMITED

    await ws.close()


async def test_disconnect_leaves_the_room(
    http_client: TestClient, server: WatchPartyServer
) -> None:
    ada = await _join(http_client, "r", "Ada")
    grace = await _join(http_client, "r", "Grace")
    await _receive_until(ada, ParticipantListServerMessage)

    await grace.close()
    participants = await _receive_until(ada, ParticipantListServerMessage)
    assert [p.display_name for p in participants.payload.participants] == ["Ada"]

    await ada.close()
    for _ in range(50):
        if server.room_state("r") is None:
            break
        await asyncio.sleep(0.01)
    assert server.room_state("r") is None
