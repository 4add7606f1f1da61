from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Sequence

import orjson

from wsreplay.marketdata.replay.datasource import Filter, ReplayMessage, parse_timestamp, select

# File reads block the loop; hand control back every N lines so other
# sessions keep delivering while a large file is scanned
_YIELD_EVERY = 100


@dataclass(frozen=True, slots=True)
class JsonlReplayDataSource:
    """
    Deterministic JSONL datasource for historical replay.

    One file per exchange: {root}/{exchange}.jsonl. Each line:
      {"localTimestamp":"2019-06-01T00:00:00.123Z","channel":"trade","symbol":"XBTUSD","message":"..."}

    Lines must be ordered by localTimestamp. "message" is sent verbatim when it is a
    string and re-serialized when it is an object. Blank lines ignored.
    """

    root: Path

    def path_for(self, exchange: str) -> Path:
        return self.root / f"{exchange}.jsonl"

    async def __call__(
        self,
        *,
        exchange: str,
        from_: str,
        to: str,
        filters: Sequence[Filter],
    ) -> AsyncIterator[ReplayMessage]:
        start, end = parse_timestamp(from_), parse_timestamp(to)
        if end <= start:
            raise ValueError(f"invalid range: 'to' ({to}) must be after 'from' ({from_})")

        path = self.path_for(exchange)
        if not path.exists():
            raise FileNotFoundError(f"no replay data for exchange {exchange!r}")

        with path.open("rb") as f:
            for line_no, line in enumerate(f, start=1):
                if line_no % _YIELD_EVERY == 0:
                    await asyncio.sleep(0)

                s = line.strip()
                if not s:
                    continue

                item = _parse_line(s, line_no=line_no)

                # file is time-ordered, nothing after 'to' can match
                if item.timestamp >= end:
                    return

                if select(item, start=start, end=end, filters=filters):
                    yield item


def _parse_line(raw: bytes, *, line_no: int) -> ReplayMessage:
    try:
        obj = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ValueError(f"invalid JSON on line {line_no}: {e}") from e

    if not isinstance(obj, dict):
        raise ValueError(f"expected an object on line {line_no}")

    ts = obj.get("localTimestamp")
    channel = obj.get("channel")
    symbol = obj.get("symbol")
    message = obj.get("message")

    if not isinstance(ts, str) or not ts:
        raise ValueError(f"missing/invalid 'localTimestamp' on line {line_no}")
    if not isinstance(channel, str) or not channel:
        raise ValueError(f"missing/invalid 'channel' on line {line_no}")
    if symbol is not None and not isinstance(symbol, str):
        raise ValueError(f"'symbol' must be a string on line {line_no}")
    if message is None:
        raise ValueError(f"missing 'message' on line {line_no}")

    if not isinstance(message, str):
        message = orjson.dumps(message).decode("utf-8")

    return ReplayMessage(
        timestamp=parse_timestamp(ts),
        message=message,
        channel=channel,
        symbol=symbol,
    )
