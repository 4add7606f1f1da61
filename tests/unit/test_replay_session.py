from __future__ import annotations

import asyncio

import orjson
import pytest

from fakes import FROM, TO, FakeSocket, GateTimer, ScriptedSource, msg
from wsreplay.core.errors import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    REPLAY_FINISHED_REASON,
    LateJoin,
    MissingSubscription,
    ReplaySourceError,
    SocketError,
)
from wsreplay.marketdata.subscriptions.mappers import subscription_mappers
from wsreplay.session.connection import ReplayConnection
from wsreplay.session.replay_session import ReplaySession, SessionKey

KEY = SessionKey(from_=FROM, to=TO)


def _connect(
    name: str,
    wire: list[tuple[str, str]],
    *,
    subscribe: bool = True,
) -> tuple[FakeSocket, ReplayConnection]:
    sock = FakeSocket(name, wire=wire)
    conn = ReplayConnection(sock, exchange="bitmex", from_=FROM, to=TO, mappers=subscription_mappers)
    if subscribe:
        conn.on_message(orjson.dumps({"op": "subscribe", "args": [f"trade:{name}"]}).decode())
    return sock, conn


def _session(source: ScriptedSource, timer: GateTimer) -> ReplaySession:
    return ReplaySession(
        key=KEY,
        replay=source,
        timer=timer,
        backpressure_poll_s=0.001,
        drain_poll_s=0.001,
    )


async def test_merges_connections_in_global_timestamp_order() -> None:
    wire: list[tuple[str, str]] = []
    source = ScriptedSource({
        "A": [msg(1, "a1", symbol="A"), msg(3, "a3", symbol="A"), msg(5, "a5", symbol="A")],
        "B": [msg(2, "b2", symbol="B"), msg(4, "b4", symbol="B")],
    })
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", wire)
    b, conn_b = _connect("B", wire)
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    error = await session.wait_finished()

    assert error is None
    assert session.state == "finished"
    assert wire == [("A", "a1"), ("B", "b2"), ("A", "a3"), ("B", "b4"), ("A", "a5")]
    assert a.sent == ["a1", "a3", "a5"]
    assert b.sent == ["b2", "b4"]
    assert a.closed_with == (CLOSE_NORMAL, REPLAY_FINISHED_REASON)
    assert b.closed_with == (CLOSE_NORMAL, REPLAY_FINISHED_REASON)
    assert session.sent == 5


async def test_equal_timestamps_follow_join_order() -> None:
    wire: list[tuple[str, str]] = []
    source = ScriptedSource({
        "A": [msg(1, "a1", symbol="A")],
        "B": [msg(1, "b1", symbol="B")],
    })
    timer = GateTimer()
    session = _session(source, timer)

    _, conn_b = _connect("B", wire)
    _, conn_a = _connect("A", wire)
    session.add_connection(conn_b)
    session.add_connection(conn_a)

    timer.open()
    await session.wait_finished()

    assert wire == [("B", "b1"), ("A", "a1")]


async def test_waits_for_the_start_delay_before_locking() -> None:
    source = ScriptedSource({"A": [msg(1, "a1", symbol="A")]})
    timer = GateTimer()
    session = ReplaySession(key=KEY, replay=source, timer=timer)

    a, conn_a = _connect("A", [])
    session.add_connection(conn_a)
    await asyncio.sleep(0.01)

    assert timer.delays == [5.0]
    assert session.state == "pending"
    assert source.calls == []
    assert a.sent == []

    timer.open()
    await session.wait_finished()
    assert a.sent == ["a1"]


async def test_replay_request_uses_connection_options() -> None:
    source = ScriptedSource({})
    timer = GateTimer()
    session = _session(source, timer)

    _, conn_a = _connect("A", [])
    conn_a.on_message('{"op": "subscribe", "args": ["orderBookL2:A"]}')
    session.add_connection(conn_a)

    timer.open()
    await session.wait_finished()

    assert len(source.calls) == 1
    exchange, from_, to, filters = source.calls[0]
    assert (exchange, from_, to) == ("bitmex", FROM, TO)
    assert [f.channel for f in filters] == ["trade", "orderBookL2"]


async def test_missing_subscription_fails_every_connection() -> None:
    source = ScriptedSource({"A": [msg(1, "a1", symbol="A")]})
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", [])
    b, conn_b = _connect("B", [], subscribe=False)
    conn_b.on_message("not json")
    conn_b.on_message('{"op": "ping"}')
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    error = await session.wait_finished()

    assert isinstance(error, MissingSubscription)
    assert '"exchange":"bitmex"' in str(error)
    assert source.calls == []
    assert a.sent == [] and b.sent == []
    for sock in (a, b):
        assert sock.closed_with is not None
        code, reason = sock.closed_with
        assert code == CLOSE_INTERNAL_ERROR
        assert reason.startswith("MissingSubscription")


async def test_backpressure_on_one_socket_stalls_the_whole_session() -> None:
    wire: list[tuple[str, str]] = []
    source = ScriptedSource({
        "A": [msg(1, "a1", symbol="A"), msg(3, "a3", symbol="A"), msg(5, "a5", symbol="A")],
        "B": [msg(2, "b2", symbol="B"), msg(4, "b4", symbol="B")],
    })
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", wire)
    b, conn_b = _connect("B", wire)
    a.hold_buffer = True
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    await asyncio.sleep(0.05)

    # a3 waits for A to drain, and b4 is behind it in merge order
    assert wire == [("A", "a1"), ("B", "b2")]
    assert session.state == "locked"

    a.release()
    await session.wait_finished()

    assert wire == [("A", "a1"), ("B", "b2"), ("A", "a3"), ("B", "b4"), ("A", "a5")]


async def test_clean_close_waits_for_each_buffer_to_drain() -> None:
    source = ScriptedSource({"A": [msg(1, "a1", symbol="A")], "B": [msg(2, "b2", symbol="B")]})
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", [])
    b, conn_b = _connect("B", [])
    b.hold_buffer = True
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    await asyncio.sleep(0.05)

    assert a.closed_with == (CLOSE_NORMAL, REPLAY_FINISHED_REASON)
    assert b.sent == ["b2"]
    assert b.closed_with is None
    assert not session.finished.done()

    b.release()
    await session.wait_finished()
    assert b.closed_with == (CLOSE_NORMAL, REPLAY_FINISHED_REASON)


async def test_late_join_is_rejected_once_locked() -> None:
    source = ScriptedSource({"A": [msg(1, "a1", symbol="A"), msg(2, "a2", symbol="A")]})
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", [])
    a.hold_buffer = True
    session.add_connection(conn_a)

    timer.open()
    await asyncio.sleep(0.02)
    assert session.state == "locked"

    late, conn_late = _connect("L", [])
    with pytest.raises(LateJoin):
        session.add_connection(conn_late)

    assert session.connections == (conn_a,)

    a.release()
    assert await session.wait_finished() is None
    assert late.sent == []
    assert late.closed_with is None


async def test_replay_source_error_aborts_session() -> None:
    source = ScriptedSource({
        "A": [msg(1, "a1", symbol="A"), OSError("disk gone")],
        "B": [msg(2, "b2", symbol="B"), msg(4, "b4", symbol="B")],
    })
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", [])
    b, conn_b = _connect("B", [])
    b.hold_buffer = True
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    error = await session.wait_finished()

    assert isinstance(error, ReplaySourceError)
    assert isinstance(error.__cause__, OSError)
    assert "b4" not in b.sent
    for sock in (a, b):
        assert sock.closed_with is not None
        assert sock.closed_with[0] == CLOSE_INTERNAL_ERROR
        assert "disk gone" in sock.closed_with[1]


async def test_socket_error_aborts_session_for_all_members() -> None:
    source = ScriptedSource({
        "A": [msg(1, "a1", symbol="A"), msg(3, "a3", symbol="A")],
        "B": [msg(2, "b2", symbol="B")],
    })
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", [])
    b, conn_b = _connect("B", [])
    b.send_error = ConnectionResetError("peer reset")
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    error = await session.wait_finished()

    assert isinstance(error, SocketError)
    assert a.sent == ["a1"]
    assert a.closed_with is not None and a.closed_with[0] == CLOSE_INTERNAL_ERROR
    assert b.closed_with is not None and b.closed_with[0] == CLOSE_INTERNAL_ERROR


async def test_failed_close_on_error_path_still_closes_siblings() -> None:
    source = ScriptedSource({})
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", [], subscribe=False)
    b, conn_b = _connect("B", [])
    a.close_error = RuntimeError("already gone")
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    error = await session.wait_finished()

    assert isinstance(error, MissingSubscription)
    assert a.closed_with is None
    assert b.closed_with is not None and b.closed_with[0] == CLOSE_INTERNAL_ERROR


async def test_failed_close_on_clean_path_switches_to_error_close() -> None:
    source = ScriptedSource({"A": [msg(1, "a1", symbol="A")], "B": [msg(2, "b2", symbol="B")]})
    timer = GateTimer()
    session = _session(source, timer)

    a, conn_a = _connect("A", [])
    b, conn_b = _connect("B", [])
    b.close_error = OSError("broken pipe")
    session.add_connection(conn_a)
    session.add_connection(conn_b)

    timer.open()
    error = await session.wait_finished()

    assert isinstance(error, SocketError)
    # A was already closed normally before B failed
    assert a.closed_with == (CLOSE_NORMAL, REPLAY_FINISHED_REASON)


async def test_finished_resolves_once_with_no_connections() -> None:
    timer = GateTimer()
    session = _session(ScriptedSource({}), timer)

    timer.open()
    assert await session.wait_finished() is None
    assert session.finished.done()
    assert session.state == "finished"

    with pytest.raises(LateJoin):
        session.add_connection(_connect("A", [])[1])
