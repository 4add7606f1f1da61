from __future__ import annotations

from typing import Any, Mapping

import orjson
import structlog

from wsreplay.core.errors import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    REPLAY_FINISHED_REASON,
    ReplayError,
    SocketError,
    UnsupportedExchange,
    close_reason,
)
from wsreplay.marketdata.replay.datasource import Filter
from wsreplay.marketdata.subscriptions.mappers import SubscriptionMapper
from wsreplay.transport.socket import ReplaySocket

log = structlog.get_logger()


class ReplayConnection:
    """
    One client socket plus the replay request it is building up.

    exchange/from/to are fixed at connect time; filters grow with every
    subscribe message the exchange's mapper recognizes.
    """

    def __init__(
        self,
        socket: ReplaySocket,
        *,
        exchange: str,
        from_: str,
        to: str,
        mappers: Mapping[str, SubscriptionMapper],
    ) -> None:
        mapper = mappers.get(exchange)
        if mapper is None:
            raise UnsupportedExchange(exchange)

        self._socket = socket
        self._mapper = mapper
        self.exchange = exchange
        self.from_ = from_
        self.to = to
        self.filters: list[Filter] = []
        self.subscription_count = 0

    @property
    def socket(self) -> ReplaySocket:
        return self._socket

    @property
    def replay_options(self) -> dict[str, Any]:
        return {
            "exchange": self.exchange,
            "from": self.from_,
            "to": self.to,
            "filters": [
                {"channel": f.channel, "symbols": list(f.symbols) if f.symbols is not None else None}
                for f in self.filters
            ],
        }

    def on_message(self, text: str) -> None:
        try:
            message = orjson.loads(text)
        except orjson.JSONDecodeError as e:
            log.warning("connection.invalid_message", connection=str(self), error=str(e))
            return

        if not self._mapper.can_handle(message):
            log.debug("connection.ignored", connection=str(self), message=text)
            return

        filters = self._mapper.map(message)
        self.filters.extend(filters)
        self.subscription_count += 1

        log.info(
            "connection.subscribed",
            connection=str(self),
            message=text,
            filters=[f.channel for f in filters],
        )

    async def close(self, error: BaseException | None = None) -> None:
        try:
            if error is None:
                await self._socket.close(CLOSE_NORMAL, REPLAY_FINISHED_REASON)
            else:
                await self._socket.close(CLOSE_INTERNAL_ERROR, close_reason(error))
        except ReplayError:
            raise
        except Exception as e:
            raise SocketError(f"close failed: {e!r}") from e

        if error is None:
            log.info("connection.closed", connection=str(self))
        else:
            log.info("connection.closed", connection=str(self), error=repr(error))

    def __str__(self) -> str:
        return orjson.dumps(self.replay_options).decode("utf-8")
