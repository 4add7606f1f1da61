from __future__ import annotations

# WebSocket close codes (RFC 6455)
CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011

REPLAY_FINISHED_REASON = "WS replay finished"

# Close frame payload is 125 bytes, 2 of which carry the code
MAX_CLOSE_REASON_BYTES = 123


class ReplayError(Exception):
    """
    Base class for every failure that terminates a replay connection or session.
    """


class InvalidRequest(ReplayError):
    """
    The connect request is missing a required query parameter.
    """


class UnsupportedExchange(ReplayError):
    def __init__(self, exchange: str) -> None:
        super().__init__(
            f"Exchange {exchange} is not supported via /ws-replay Websocket API, "
            "please use HTTP streaming API instead."
        )
        self.exchange = exchange


class LateJoin(ReplayError):
    def __init__(self) -> None:
        super().__init__("trying to add new WS connection to replay session that already started")


class MissingSubscription(ReplayError):
    def __init__(self, connection: str) -> None:
        super().__init__(f"No subscriptions received for websocket connection {connection}")
        self.connection = connection


class ReplaySourceError(ReplayError):
    """
    The replay data source or the merge over it failed.
    """


class SocketError(ReplayError):
    """
    Sending to or closing a client socket failed.
    """


def close_reason(error: BaseException) -> str:
    """
    Human-readable close reason for an error, trimmed to the close-frame limit.
    """
    reason = f"{type(error).__name__}: {error}"
    encoded = reason.encode("utf-8")
    if len(encoded) <= MAX_CLOSE_REASON_BYTES:
        return reason
    return encoded[: MAX_CLOSE_REASON_BYTES - 3].decode("utf-8", errors="ignore") + "..."
