"""SignalingChannel 테스트.

websockets 연결 대신 스크립트된 커넥터를 주입합니다.
"""

import asyncio
import json

import pytest

from voicelink.negotiation import SignalingChannel
from voicelink.shared import ConnectionError, EventType


class FakeSocket:
    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False

    def push(self, event, data=None):
        self.inbox.put_nowait(json.dumps({"type": event, "data": data}))

    def drop(self):
        self.inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self.inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True
        self.inbox.put_nowait(None)


class ScriptedConnector:
    """호출될 때마다 준비된 소켓 또는 예외를 순서대로 돌려줍니다."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def waiter(channel, event):
    """이벤트가 올 때마다 인자를 기록하고 신호를 주는 핸들러를 등록합니다."""
    received = []
    signal = asyncio.Event()

    def handler(data):
        received.append(data)
        signal.set()

    channel.on(event, handler)
    return received, signal


async def wait(signal):
    await asyncio.wait_for(signal.wait(), timeout=2)
    signal.clear()


async def test_connect_and_dispatch():
    socket = FakeSocket()
    channel = SignalingChannel("ws://relay/ws", 3, 0, connector=ScriptedConnector(socket))
    connects, connected = waiter(channel, "connect")
    joined, got_joined = waiter(channel, "room-joined")

    async_seen = []

    async def async_handler(data):
        async_seen.append(data)

    channel.on("room-joined", async_handler)

    await channel.connect()
    assert channel.connected
    await wait(connected)

    socket.inbox.put_nowait("not json")
    socket.push("room-joined", {"roomId": "R", "role": "host"})
    await wait(got_joined)

    assert joined == [{"roomId": "R", "role": "host"}]
    assert async_seen == [{"roomId": "R", "role": "host"}]
    await channel.close()


async def test_send_serializes_envelope():
    socket = FakeSocket()
    channel = SignalingChannel("ws://relay/ws", 3, 0, connector=ScriptedConnector(socket))
    assert not await channel.send(EventType.JOIN_ROOM, {"roomId": "R"})

    await channel.connect()
    assert await channel.send(EventType.JOIN_ROOM, {"roomId": "R", "role": "client"})
    assert socket.sent == [{"type": "join-room", "data": {"roomId": "R", "role": "client"}}]
    await channel.close()


async def test_connect_failure_raises_connection_error():
    channel = SignalingChannel("ws://relay/ws", 3, 0, connector=ScriptedConnector(OSError("refused")))
    with pytest.raises(ConnectionError):
        await channel.connect()
    assert not channel.connected


async def test_reconnects_after_drop():
    first, second = FakeSocket(), FakeSocket()
    channel = SignalingChannel("ws://relay/ws", 3, 0,
                               connector=ScriptedConnector(first, OSError("refused"), second))
    disconnects, disconnected = waiter(channel, "disconnect")
    attempts, _ = waiter(channel, "reconnect_attempt")
    reconnects, reconnected = waiter(channel, "reconnect")
    users, user_joined = waiter(channel, "user-joined")

    await channel.connect()
    first.drop()
    await wait(disconnected)
    await wait(reconnected)

    assert attempts == [1, 2]
    assert reconnects == [2]
    assert channel.connected

    second.push("user-joined", "peer-2")
    await wait(user_joined)
    assert users == ["peer-2"]
    await channel.close()


async def test_reconnect_failed_after_all_attempts():
    connector = ScriptedConnector(FakeSocket())
    channel = SignalingChannel("ws://relay/ws", 2, 0, connector=connector)
    failures, failed = waiter(channel, "reconnect_failed")

    await channel.connect()
    connector.outcomes.clear()
    channel._ws.drop()
    await wait(failed)

    assert connector.calls == 3
    assert not channel.connected
    await channel.close()


async def test_close_does_not_emit_disconnect():
    socket = FakeSocket()
    channel = SignalingChannel("ws://relay/ws", 3, 0, connector=ScriptedConnector(socket))
    disconnects, _ = waiter(channel, "disconnect")

    await channel.connect()
    await channel.close()
    await asyncio.sleep(0)

    assert socket.closed
    assert disconnects == []
    assert not channel.connected
    await channel.close()


async def test_off_removes_handler():
    channel = SignalingChannel("ws://relay/ws", 1, 0, connector=ScriptedConnector(FakeSocket()))
    seen = []
    channel.on("peer-id", seen.append)
    channel.off("peer-id", seen.append)
    await channel._emit("peer-id", {"peerId": "x"})
    assert seen == []
