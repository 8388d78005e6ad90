"""End-to-end tests of WatchPartyClient against a running server."""

import asyncio
from collections.abc import Callable

from aiohttp.test_utils import TestClient
from conftest import FakePlayer

from aiowatchparty import WatchPartyClient
from aiowatchparty.models.room import ChatServerPayload, ErrorServerPayload, ParticipantInfo
from aiowatchparty.models.source import DirectUrlSource, MediaSource
from aiowatchparty.models.types import ErrorCode


async def _eventually(check: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not check():
            await asyncio.sleep(0.01)


async def _connect(http_client: TestClient, name: str, **kwargs) -> WatchPartyClient:
    client = WatchPartyClient("movie-night", name, settle_window=0.1, **kwargs)
    await client.connect(str(http_client.make_url("/ws")))
    return client


async def test_connect_joins_and_tracks_participants(http_client: TestClient) -> None:
    ada = await _connect(http_client, "Ada")
    seen: list[list[ParticipantInfo]] = []
    ada.add_participants_listener(seen.append)

    grace = await _connect(http_client, "Grace")
    await _eventually(lambda: len(ada.participants) == 2)

    assert [p.display_name for p in ada.participants] == ["Ada", "Grace"]
    assert seen[-1] == ada.participants

    await grace.disconnect()
    await _eventually(lambda: len(ada.participants) == 1)
    await ada.disconnect()
    assert not ada.connected


async def test_remote_play_drives_local_player_without_echo(http_client: TestClient) -> None:
    ada = await _connect(http_client, "Ada")
    grace = await _connect(http_client, "Grace")
    ada_player = FakePlayer()
    grace_player = FakePlayer()
    ada.attach_player(ada_player)
    grace.attach_player(grace_player)
    # Grace's player reports its commands back, a loop would bounce them to Ada
    grace_player.on_change = lambda kind, position: (
        grace.play(position) if kind == "play" else grace.seek(position)
    )

    assert ada.play(33.0)

    await _eventually(lambda: grace_player.playing)
    assert grace_player.calls == [("seek", 33.0), ("play", None)]
    await asyncio.sleep(0.2)
    assert ada_player.calls == []

    await ada.disconnect()
    await grace.disconnect()


async def test_late_joiner_catches_up(http_client: TestClient) -> None:
    ada = await _connect(http_client, "Ada")
    source = DirectUrlSource(source_url="https://cdn.example.com/film.mp4")
    await ada.change_source(source)
    ada.attach_player(FakePlayer())
    await asyncio.sleep(0.05)
    assert ada.play(100.0)
    await asyncio.sleep(0.05)

    loaded: list[MediaSource] = []
    grace = WatchPartyClient("movie-night", "Grace")
    grace.add_source_listener(loaded.append)
    await grace.connect(str(http_client.make_url("/ws")))

    assert loaded == [source]
    assert grace.source == source
    player = FakePlayer()
    grace.attach_player(player)
    assert player.calls[0][0] == "seek"
    assert player.calls[0][1] >= 100.0
    assert player.playing

    await ada.disconnect()
    await grace.disconnect()


async def test_chat_and_errors(http_client: TestClient) -> None:
    ada = await _connect(http_client, "Ada")
    chats: list[ChatServerPayload] = []
    errors: list[ErrorServerPayload] = []

    async def on_chat(payload: ChatServerPayload) -> None:
        chats.append(payload)

    ada.add_chat_listener(on_chat)
    ada.add_error_listener(errors.append)

    await ada.send_chat("hello")
    await ada.send_chat("x" * 3000)
    await _eventually(lambda: bool(chats) and bool(errors))

    assert chats[0].text == "hello"
    assert chats[0].display_name == "Ada"
    assert errors[0].code is ErrorCode.INVALID_INPUT

    await ada.disconnect()


async def test_remote_source_change_reaches_listener(http_client: TestClient) -> None:
    ada = await _connect(http_client, "Ada")
    grace = await _connect(http_client, "Grace")
    loaded: list[MediaSource] = []
    grace.add_source_listener(loaded.append)

    source = DirectUrlSource(source_url="https://cdn.example.com/next.webm")
    await ada.change_source(source)

    await _eventually(lambda: bool(loaded))
    assert loaded == [source]
    assert grace.source == source

    await ada.disconnect()
    await grace.disconnect()
