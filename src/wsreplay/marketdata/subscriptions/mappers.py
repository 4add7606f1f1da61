from __future__ import annotations

from typing import Any, Iterable, Protocol

from wsreplay.marketdata.replay.datasource import Filter


class SubscriptionMapper(Protocol):
    """
    Translates an exchange-native subscribe request into replay filters.
    """

    def can_handle(self, message: Any) -> bool:
        ...

    def map(self, message: Any) -> list[Filter]:
        ...


def _group(pairs: Iterable[tuple[str, str | None]]) -> list[Filter]:
    """
    Collapse (channel, symbol) pairs into one Filter per channel, first-seen order.

    A channel subscribed at least once without a symbol matches every symbol.
    """
    by_channel: dict[str, list[str] | None] = {}
    for channel, symbol in pairs:
        if channel not in by_channel:
            by_channel[channel] = []
        symbols = by_channel[channel]
        if symbols is None:
            continue
        if symbol is None:
            by_channel[channel] = None
        elif symbol not in symbols:
            symbols.append(symbol)

    return [
        Filter(channel=channel, symbols=None if symbols is None else tuple(symbols))
        for channel, symbols in by_channel.items()
    ]


class BitmexSubscriptionMapper:
    """
    {"op": "subscribe", "args": ["trade:XBTUSD", "orderBookL2"]}
    """

    def can_handle(self, message: Any) -> bool:
        return isinstance(message, dict) and message.get("op") == "subscribe"

    def map(self, message: Any) -> list[Filter]:
        args = message.get("args", [])
        if isinstance(args, str):
            args = [args]

        pairs: list[tuple[str, str | None]] = []
        for arg in args:
            channel, _, symbol = str(arg).partition(":")
            pairs.append((channel, symbol or None))
        return _group(pairs)


class BinanceSubscriptionMapper:
    """
    {"method": "SUBSCRIBE", "params": ["btcusdt@trade", "ethusdt@depth@100ms"], "id": 1}
    """

    def can_handle(self, message: Any) -> bool:
        return isinstance(message, dict) and message.get("method") == "SUBSCRIBE"

    def map(self, message: Any) -> list[Filter]:
        pairs: list[tuple[str, str | None]] = []
        for param in message.get("params", []):
            parts = str(param).split("@")
            if len(parts) < 2:
                continue
            symbol, channel = parts[0], parts[1]
            pairs.append((channel, symbol.upper()))
        return _group(pairs)


class CoinbaseSubscriptionMapper:
    """
    {"type": "subscribe", "product_ids": ["BTC-USD"], "channels": ["matches", {"name": "level2", "product_ids": ["ETH-USD"]}]}
    """

    def can_handle(self, message: Any) -> bool:
        return isinstance(message, dict) and message.get("type") == "subscribe"

    def map(self, message: Any) -> list[Filter]:
        default_products = list(message.get("product_ids", []))

        pairs: list[tuple[str, str | None]] = []
        for channel in message.get("channels", []):
            if isinstance(channel, dict):
                name = str(channel.get("name", ""))
                products = list(channel.get("product_ids", default_products))
            else:
                name = str(channel)
                products = default_products

            if not name:
                continue
            if not products:
                pairs.append((name, None))
            for product in products:
                pairs.append((name, str(product)))
        return _group(pairs)


_bitmex = BitmexSubscriptionMapper()
_binance = BinanceSubscriptionMapper()

# exchange id -> mapper
subscription_mappers: dict[str, SubscriptionMapper] = {
    "bitmex": _bitmex,
    "binance": _binance,
    "binance-futures": _binance,
    "coinbase": CoinbaseSubscriptionMapper(),
}
