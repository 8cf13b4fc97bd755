"""Tests for RealtimeConnection with a fake reconnecting connect() iterator."""
import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedError

from schoolchat.session.connection import CONNECT, DISCONNECT, RealtimeConnection

_DROP = object()


class FakeSocket:
    """Minimal client protocol: async iteration over frames, send, close."""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False

    def push(self, frame):
        self.inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self):
        self.inbox.put_nowait(_DROP)

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _DROP:
            raise ConnectionClosedError(None, None)
        return item


class FakeConnector:
    """Stands in for websockets' reconnecting connect(): yields each socket in turn."""

    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.uris = []

    def __call__(self, uri):
        self.uris.append(uri)
        return self._iterate()

    async def _iterate(self):
        for socket in self.sockets:
            yield socket
        # No further reconnects
        await asyncio.Event().wait()


async def settle(condition, rounds=100):
    for _ in range(rounds):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def socket():
    return FakeSocket()


def make_connection(*sockets):
    connector = FakeConnector(*sockets)
    return RealtimeConnection("ws://chat.test/ws/realtime", connect_factory=connector), connector


@pytest.mark.asyncio
async def test_connect_binds_user_and_dispatches(socket):
    conn, connector = make_connection(socket)
    received, connects = [], []
    conn.on("receive-message", received.append)
    conn.on(CONNECT, connects.append)

    await conn.connect("u 1")
    await settle(lambda: conn.is_connected)
    socket.push({"event": "receive-message", "data": {"id": "m1"}})
    await settle(lambda: received)

    assert connector.uris == ["ws://chat.test/ws/realtime?userId=u+1"]
    assert connects == [None]
    assert received == [{"id": "m1"}]
    await conn.disconnect()


@pytest.mark.asyncio
async def test_empty_user_rejected():
    conn, _ = make_connection()
    with pytest.raises(ValueError):
        await conn.connect("")


@pytest.mark.asyncio
async def test_second_connect_is_noop(socket):
    conn, connector = make_connection(socket)
    await conn.connect("u1")
    await settle(lambda: connector.uris)
    await conn.connect("u1")
    await settle(lambda: conn.is_connected)
    assert len(connector.uris) == 1
    await conn.disconnect()


@pytest.mark.asyncio
async def test_send_is_fire_and_forget(socket):
    conn, _ = make_connection(socket)
    await conn.connect("u1")
    await settle(lambda: conn.is_connected)

    assert conn.send("join-group", {"groupId": "g1", "userId": "u1"}) is None
    await settle(lambda: socket.sent)

    assert socket.sent == [{"event": "join-group", "data": {"groupId": "g1", "userId": "u1"}}]
    await conn.disconnect()


@pytest.mark.asyncio
async def test_send_while_offline_dropped():
    conn, _ = make_connection()
    conn.send("send-message", {"content": "hi"})
    assert conn.is_connected is False


@pytest.mark.asyncio
async def test_handler_errors_do_not_stop_receive_loop(socket):
    conn, _ = make_connection(socket)
    received = []

    def broken(_data):
        raise RuntimeError("handler bug")

    async def collect(data):
        received.append(data)

    conn.on("receive-message", broken)
    conn.on("receive-message", collect)
    await conn.connect("u1")

    socket.push({"event": "receive-message", "data": 1})
    socket.push({"event": "receive-message", "data": 2})
    await settle(lambda: len(received) == 2)

    assert received == [1, 2]
    await conn.disconnect()


@pytest.mark.asyncio
async def test_malformed_frames_ignored(socket):
    conn, _ = make_connection(socket)
    received = []
    conn.on("receive-message", received.append)
    await conn.connect("u1")

    socket.push("not json")
    socket.push({"data": "no event"})
    socket.push(["not", "an", "envelope"])
    socket.push({"event": "receive-message", "data": "ok"})
    await settle(lambda: received)

    assert received == ["ok"]
    await conn.disconnect()


@pytest.mark.asyncio
async def test_off_removes_handler(socket):
    conn, _ = make_connection(socket)
    first, second = [], []
    conn.on("receive-message", first.append)
    conn.on("receive-message", second.append)
    conn.off("receive-message", first.append)
    await conn.connect("u1")

    socket.push({"event": "receive-message", "data": "x"})
    await settle(lambda: second)

    assert first == []
    await conn.disconnect()


@pytest.mark.asyncio
async def test_reconnect_fires_lifecycle_events():
    first, second = FakeSocket(), FakeSocket()
    conn, _ = make_connection(first, second)
    lifecycle = []
    conn.on(CONNECT, lambda _: lifecycle.append("connect"))
    conn.on(DISCONNECT, lambda _: lifecycle.append("disconnect"))

    await conn.connect("u1")
    await settle(lambda: lifecycle == ["connect"])

    first.drop()
    await settle(lambda: lifecycle == ["connect", "disconnect", "connect"])

    conn.send("join-group", {"groupId": "g1"})
    await settle(lambda: second.sent)
    assert first.sent == []
    await conn.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(socket):
    conn, _ = make_connection(socket)
    disconnects = []
    conn.on(DISCONNECT, disconnects.append)
    await conn.connect("u1")
    await settle(lambda: conn.is_connected)

    await conn.disconnect()
    await conn.disconnect()

    assert socket.closed is True
    assert conn.is_connected is False
    assert disconnects == [None]
