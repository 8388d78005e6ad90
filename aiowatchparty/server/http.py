"""HTTP control plane: room lookup, swarm transfer control and media streaming."""

from __future__ import annotations

import logging
from typing import Any

import orjson
from aiohttp import web

from aiowatchparty.models.swarm import AddTransferRequest, AddTransferResponse

from .server import WatchPartyServer
from .swarm import (
    InvalidRangeError,
    NoMediaSelectedError,
    RangeNotSatisfiableError,
    StreamReadError,
    TransferNotReadyError,
)

SERVER_KEY = web.AppKey("server", WatchPartyServer)
CORS_ORIGIN_KEY = web.AppKey("cors_origin", str)
RETRY_AFTER_SECONDS = 2

logger = logging.getLogger(__name__)


def _json(data: Any, *, status: int = 200) -> web.Response:
    return web.Response(
        body=orjson.dumps(data), status=status, content_type="application/json"
    )


def _error(reason: str, *, status: int, headers: dict[str, str] | None = None) -> web.Response:
    response = _json({"error": reason}, status=status)
    if headers:
        response.headers.update(headers)
    return response


async def create_room(request: web.Request) -> web.Response:
    """POST /api/rooms."""
    room_id = request.app[SERVER_KEY].create_room()
    return _json({"room_id": room_id})


async def get_room(request: web.Request) -> web.Response:
    """GET /api/rooms/{room_id}."""
    snapshot = request.app[SERVER_KEY].room_state(request.match_info["room_id"])
    if snapshot is None:
        return _json({"exists": False}, status=404)
    return _json({"exists": True, **snapshot.to_payload().to_dict()})


async def add_transfer(request: web.Request) -> web.Response:
    """POST /api/swarm/add."""
    try:
        body = await request.json(loads=orjson.loads)
        add_request = AddTransferRequest.from_dict(body)
    except Exception as err:
        logger.warning("Rejecting swarm transfer request: %s", err)
        return _error(f"A valid magnet locator is required: {err}", status=400)

    status = await request.app[SERVER_KEY].transfers.start_transfer(add_request.locator)
    return _json(AddTransferResponse(status=status).to_dict())


async def transfer_status(request: web.Request) -> web.Response:
    """GET /api/swarm/status."""
    return _json(request.app[SERVER_KEY].transfers.get_status().to_dict())


async def stream_media(request: web.Request) -> web.StreamResponse:
    """GET /api/swarm/stream, honoring the Range header."""
    transfers = request.app[SERVER_KEY].transfers
    try:
        media = transfers.stream_bytes(request.headers.get("Range"))
    except NoMediaSelectedError as err:
        return _error(str(err), status=404)
    except TransferNotReadyError as err:
        return _error(str(err), status=503, headers={"Retry-After": str(RETRY_AFTER_SECONDS)})
    except RangeNotSatisfiableError as err:
        return _error(str(err), status=416, headers={"Content-Range": f"bytes */{err.total}"})
    except InvalidRangeError as err:
        return _error(str(err), status=400)

    response = web.StreamResponse(status=media.status, headers=media.headers)
    await response.prepare(request)
    try:
        async for chunk in media.body:
            await response.write(chunk)
    except StreamReadError as err:
        # Only this response is affected, the transfer keeps downloading
        logger.warning("Aborting media stream: %s", err)
        if request.transport is not None:
            request.transport.close()
        return response
    except ConnectionResetError:
        logger.debug("Media reader went away")
        return response
    await response.write_eof()
    return response


async def remove_transfer(request: web.Request) -> web.Response:
    """POST /api/swarm/remove."""
    await request.app[SERVER_KEY].transfers.remove_transfer()
    return _json({"ok": True})


async def websocket(request: web.Request) -> web.WebSocketResponse:
    """GET /ws, the real-time channel."""
    return await request.app[SERVER_KEY].on_connect(request)


async def preflight(_request: web.Request) -> web.Response:
    """OPTIONS on any path, answered for cross-origin browser clients."""
    return web.Response(status=204)


async def _add_cors_headers(request: web.Request, response: web.StreamResponse) -> None:
    """Allow browser clients served from another origin, streamed responses included."""
    response.headers["Access-Control-Allow-Origin"] = request.app[CORS_ORIGIN_KEY]
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Range"
    response.headers["Access-Control-Expose-Headers"] = (
        "Content-Range, Content-Length, Accept-Ranges"
    )


def create_app(server: WatchPartyServer, *, cors_origin: str | None = "*") -> web.Application:
    """Build the aiohttp application serving the watch party server."""
    app = web.Application()
    app[SERVER_KEY] = server
    if cors_origin:
        app[CORS_ORIGIN_KEY] = cors_origin
        app.on_response_prepare.append(_add_cors_headers)
        app.router.add_route("OPTIONS", "/{tail:.*}", preflight)
    app.router.add_post("/api/rooms", create_room)
    app.router.add_get("/api/rooms/{room_id}", get_room)
    app.router.add_post("/api/swarm/add", add_transfer)
    app.router.add_get("/api/swarm/status", transfer_status)
    app.router.add_get("/api/swarm/stream", stream_media)
    app.router.add_post("/api/swarm/remove", remove_transfer)
    app.router.add_get("/ws", websocket)
    return app
