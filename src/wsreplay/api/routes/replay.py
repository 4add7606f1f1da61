from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, WebSocket

from wsreplay.core.errors import (
    CLOSE_INTERNAL_ERROR,
    InvalidRequest,
    LateJoin,
    ReplayError,
    UnsupportedExchange,
    close_reason,
)
from wsreplay.core.logging.setup import bind_context, clear_context
from wsreplay.session.connection import ReplayConnection
from wsreplay.session.registry import SessionRegistry
from wsreplay.session.replay_session import SessionKey
from wsreplay.transport.socket import StarletteReplaySocket

log = structlog.get_logger()

router = APIRouter(tags=["replay"])

_REQUIRED_PARAMS = ("from", "to", "exchange")


@router.websocket("/ws-replay")
async def ws_replay(websocket: WebSocket) -> None:
    """
    Historical replay over WebSocket.

    Connections asking for the same from/to within the consolidation window are
    served from one session, so messages across all of them arrive ordered by
    their original local timestamp.
    """
    await websocket.accept()

    socket = StarletteReplaySocket(websocket)
    socket.start()

    try:
        await _serve(websocket, socket)
    finally:
        clear_context()


async def _serve(websocket: WebSocket, socket: StarletteReplaySocket) -> None:
    params = websocket.query_params
    missing = [name for name in _REQUIRED_PARAMS if not params.get(name)]
    if missing:
        await _reject(socket, InvalidRequest(f"missing required query parameter(s): {', '.join(missing)}"))
        return

    from_, to, exchange = params["from"], params["to"], params["exchange"]
    key = SessionKey(from_=from_, to=to)
    bind_context(session_key=str(key), exchange=exchange)

    try:
        connection = ReplayConnection(
            socket,
            exchange=exchange,
            from_=from_,
            to=to,
            mappers=websocket.app.state.mappers,
        )
    except UnsupportedExchange as e:
        await _reject(socket, e)
        return

    registry: SessionRegistry = websocket.app.state.registry
    session = registry.get_or_create(key)

    try:
        session.add_connection(connection)
    except LateJoin as e:
        await _reject(socket, e)
        return

    reader = asyncio.create_task(_read_subscriptions(socket, connection))
    try:
        # The session owns closing; the client may also go away first
        await socket.wait_closed()
    finally:
        reader.cancel()


async def _read_subscriptions(socket: StarletteReplaySocket, connection: ReplayConnection) -> None:
    async for text in socket.iter_text():
        connection.on_message(text)


async def _reject(socket: StarletteReplaySocket, error: ReplayError) -> None:
    log.warning("replay.rejected", error=repr(error))
    try:
        await socket.close(CLOSE_INTERNAL_ERROR, close_reason(error))
    except ReplayError as close_error:
        log.warning("replay.reject_close_failed", error=repr(close_error))
