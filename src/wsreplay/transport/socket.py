from __future__ import annotations

import asyncio
from typing import AsyncIterator, Protocol

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from wsreplay.core.errors import SocketError

log = structlog.get_logger()


class ReplaySocket(Protocol):
    """
    Outbound side of a client connection as seen by a replay session.

    buffered_amount is the number of bytes accepted by send_text that the
    transport has not consumed yet.
    """

    @property
    def buffered_amount(self) -> int:
        ...

    async def send_text(self, data: str) -> None:
        ...

    async def close(self, code: int, reason: str) -> None:
        ...


class StarletteReplaySocket:
    """
    ReplaySocket over a Starlette/FastAPI WebSocket.

    send_text only enqueues; a writer task hands frames to the ASGI server one at
    a time, so buffered_amount reflects what the client has not yet taken.
    A failed write is remembered and raised as SocketError on the next send.

    closing: no more sends accepted (we started closing or the client left)
    closed: the close frame went out, or the client is gone
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._buffered = 0
        self._error: BaseException | None = None
        self._closing = asyncio.Event()
        self._closed = asyncio.Event()
        self._writer: asyncio.Task[None] | None = None

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def send_text(self, data: str) -> None:
        if self._error is not None:
            raise SocketError(f"send failed: {self._error!r}") from self._error
        if self._closing.is_set():
            raise SocketError("send on closed socket")

        self._buffered += len(data.encode("utf-8"))
        self._outbox.put_nowait(data)

    async def close(self, code: int, reason: str) -> None:
        if self._closing.is_set():
            return
        self._stop_writing()

        try:
            if self._ws.application_state != WebSocketState.CONNECTED:
                return
            if self._ws.client_state == WebSocketState.DISCONNECTED:
                return
            await self._ws.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            raise SocketError(f"close failed: {e!r}") from e
        finally:
            self._closed.set()

    async def iter_text(self) -> AsyncIterator[str]:
        """
        Inbound text frames until the client disconnects. Binary frames are skipped.
        """
        while not self._closing.is_set():
            try:
                message = await self._ws.receive()
            except RuntimeError:
                # receive after the disconnect was already consumed
                self._client_gone()
                return

            if message["type"] == "websocket.disconnect":
                log.debug("socket.client_disconnected", code=message.get("code"))
                self._client_gone()
                return

            text = message.get("text")
            if text is not None:
                yield text

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _write_loop(self) -> None:
        while True:
            data = await self._outbox.get()
            size = len(data.encode("utf-8"))
            try:
                await self._ws.send_text(data)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                log.warning("socket.send_failed", error=repr(e))
                self._error = e
                self._discard_outbox()
                return
            self._buffered -= size

    def _client_gone(self) -> None:
        self._stop_writing()
        self._closed.set()

    def _stop_writing(self) -> None:
        self._closing.set()
        if self._writer is not None:
            self._writer.cancel()
        self._discard_outbox()

    def _discard_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
        self._buffered = 0
