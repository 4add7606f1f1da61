from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Literal

import structlog

from wsreplay.core.errors import (
    LateJoin,
    MissingSubscription,
    ReplayError,
    ReplaySourceError,
    SocketError,
)
from wsreplay.marketdata.replay.datasource import ReplayMessage, ReplaySource
from wsreplay.marketdata.replay.merge import merge
from wsreplay.session.connection import ReplayConnection

log = structlog.get_logger()

SessionState = Literal["pending", "locked", "finished"]

# Waits out the consolidation window, asyncio.sleep in production
Timer = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class SessionKey:
    """
    Identifies connections that can share one replay: same requested range.
    """

    from_: str
    to: str

    def __str__(self) -> str:
        return f"{self.from_}-{self.to}"


@dataclass(frozen=True, slots=True)
class _Delivery:
    timestamp: datetime
    message: str
    connection: ReplayConnection


class ReplaySession:
    """
    Replays one merged, timestamp-ordered stream to a group of connections.

    Lifecycle: pending -> locked -> finished
      - pending: connections may join until the start delay elapses
      - locked: membership is frozen, every connection must have subscribed,
        then the per-connection streams are merged and delivered in order
      - finished: all sockets closed, `finished` resolved exactly once

    Any failure (missing subscription, replay source, socket) ends the whole
    session: every connection is closed with an error and no drain wait.
    """

    def __init__(
        self,
        *,
        key: SessionKey,
        replay: ReplaySource,
        start_delay_s: float = 5.0,
        backpressure_poll_s: float = 0.001,
        drain_poll_s: float = 0.1,
        timer: Timer = asyncio.sleep,
    ) -> None:
        self._key = key
        self._replay = replay
        self._start_delay_s = start_delay_s
        self._backpressure_poll_s = backpressure_poll_s
        self._drain_poll_s = drain_poll_s
        self._timer = timer

        self._connections: list[ReplayConnection] = []
        self._state: SessionState = "pending"
        self._error: BaseException | None = None
        self._sent = 0

        loop = asyncio.get_running_loop()
        self._finished: asyncio.Future[BaseException | None] = loop.create_future()
        self._task = loop.create_task(self._run(), name=f"replay-session:{key}")

        log.info("session.created", session_key=str(key), start_delay_s=start_delay_s)

    @property
    def key(self) -> SessionKey:
        return self._key

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connections(self) -> tuple[ReplayConnection, ...]:
        return tuple(self._connections)

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def sent(self) -> int:
        return self._sent

    @property
    def finished(self) -> asyncio.Future[BaseException | None]:
        """
        Resolves with the terminating error (or None) once the session is finished.
        """
        return self._finished

    async def wait_finished(self) -> BaseException | None:
        return await asyncio.shield(self._finished)

    def add_connection(self, connection: ReplayConnection) -> None:
        if self._state != "pending":
            raise LateJoin()

        self._connections.append(connection)
        log.info(
            "session.connection_added",
            session_key=str(self._key),
            connection=str(connection),
            connections=len(self._connections),
        )

    # ---------------- Internals ----------------

    async def _run(self) -> None:
        try:
            await self._timer(self._start_delay_s)
            await self._start()
        except ReplayError as e:
            self._error = e
            log.warning("session.failed", session_key=str(self._key), error=repr(e))
            await self._close_all(e)
        except Exception as e:
            self._error = e
            log.exception("session.crashed", session_key=str(self._key))
            await self._close_all(e)
        finally:
            self._state = "finished"
            if not self._finished.done():
                self._finished.set_result(self._error)

            log.info(
                "session.finished",
                session_key=str(self._key),
                connections=len(self._connections),
                sent=self._sent,
                error=repr(self._error) if self._error is not None else None,
            )

    async def _start(self) -> None:
        # Membership is frozen from here on
        self._state = "locked"

        log.info(
            "session.locked",
            session_key=str(self._key),
            connections=[str(c) for c in self._connections],
        )

        for connection in self._connections:
            if connection.subscription_count == 0:
                raise MissingSubscription(str(connection))

        streams = [self._stream_for(c) for c in self._connections]

        async with aclosing(merge(*streams, key=lambda d: d.timestamp)) as merged:
            async for delivery in merged:
                await self._deliver(delivery)

        await self._close_all(None)

    async def _stream_for(self, connection: ReplayConnection) -> AsyncIterator[_Delivery]:
        messages: AsyncIterator[ReplayMessage] | None = None
        try:
            messages = self._replay(
                exchange=connection.exchange,
                from_=connection.from_,
                to=connection.to,
                filters=tuple(connection.filters),
            )
            async for item in messages:
                yield _Delivery(timestamp=item.timestamp, message=item.message, connection=connection)
        except ReplayError:
            raise
        except Exception as e:
            raise ReplaySourceError(f"replay failed for {connection.exchange}: {e}") from e
        finally:
            aclose = getattr(messages, "aclose", None) if messages is not None else None
            if aclose is not None:
                await aclose()

    async def _deliver(self, delivery: _Delivery) -> None:
        socket = delivery.connection.socket

        # Nothing else is sent until this socket drains
        while socket.buffered_amount > 0:
            await asyncio.sleep(self._backpressure_poll_s)

        try:
            await socket.send_text(delivery.message)
        except ReplayError:
            raise
        except Exception as e:
            raise SocketError(f"send failed: {e!r}") from e

        self._sent += 1

    async def _close_all(self, error: BaseException | None) -> None:
        for connection in self._connections:
            if error is not None:
                try:
                    await connection.close(error)
                except ReplayError as close_error:
                    log.warning(
                        "session.close_failed",
                        session_key=str(self._key),
                        connection=str(connection),
                        error=repr(close_error),
                    )
                continue

            while connection.socket.buffered_amount > 0:
                await asyncio.sleep(self._drain_poll_s)

            await connection.close()
