from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol, Sequence


@dataclass(frozen=True, slots=True)
class Filter:
    """
    Selects historical messages of one channel, optionally narrowed to symbols.

    symbols=None means every symbol of the channel.
    """

    channel: str
    symbols: tuple[str, ...] | None = None

    def matches(self, *, channel: str, symbol: str | None) -> bool:
        if channel != self.channel:
            return False
        if self.symbols is None:
            return True
        return symbol is not None and symbol in self.symbols


@dataclass(frozen=True, slots=True)
class ReplayMessage:
    """
    One historical message as it was received (local timestamp + verbatim payload).
    """

    timestamp: datetime
    message: str
    channel: str = ""
    symbol: str | None = None


class ReplaySource(Protocol):
    """
    Produces one time-ordered stream of messages for a single replay request.
    """

    def __call__(
        self,
        *,
        exchange: str,
        from_: str,
        to: str,
        filters: Sequence[Filter],
    ) -> AsyncIterator[ReplayMessage]:
        ...


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 date or datetime. Naive values are treated as UTC.
    """
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"invalid timestamp {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def select(
    item: ReplayMessage,
    *,
    start: datetime,
    end: datetime,
    filters: Sequence[Filter],
) -> bool:
    if not start <= item.timestamp < end:
        return False
    return any(f.matches(channel=item.channel, symbol=item.symbol) for f in filters)


@dataclass(frozen=True)
class InMemoryReplayDataSource:
    """
    Simple in-memory datasource for tests and early demos.

    items maps exchange -> messages already ordered by timestamp.
    """

    items: dict[str, Sequence[ReplayMessage]]

    async def __call__(
        self,
        *,
        exchange: str,
        from_: str,
        to: str,
        filters: Sequence[Filter],
    ) -> AsyncIterator[ReplayMessage]:
        start, end = parse_timestamp(from_), parse_timestamp(to)
        for item in self.items.get(exchange, ()):
            if select(item, start=start, end=end, filters=filters):
                yield item
