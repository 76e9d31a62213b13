import asyncio

import pytest
from aiohttp import WSMessage, WSMsgType

from mediaservices.socket.connection import Connection, Pipe
from mediaservices.socket.server import MessageType


class FakeWebSocket:
    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def receive(self):
        return await self.inbox.get()

    async def send_bytes(self, data):
        if self.closed:
            raise ConnectionResetError("closed")
        self.sent.append(("bytes", data))

    async def send_str(self, data):
        if self.closed:
            raise ConnectionResetError("closed")
        self.sent.append(("str", data))

    async def close(self):
        self.closed = True
        self.inbox.put_nowait(WSMessage(WSMsgType.CLOSED, None, None))
        return True

    def push(self, data):
        kind = WSMsgType.TEXT if isinstance(data, str) else WSMsgType.BINARY
        self.inbox.put_nowait(WSMessage(kind, data, None))


async def _eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


def _connection(ws, message_type=MessageType.BINARY, read_timeout=0, write_timeout=0):
    return Connection(ws, message_type, read_timeout, write_timeout)


@pytest.mark.asyncio
async def test_read_binary_message():
    ws = FakeWebSocket()
    ws.push(b"\x00\x01payload")
    assert await _connection(ws).read() == b"\x00\x01payload"


@pytest.mark.asyncio
async def test_read_text_message_returns_bytes():
    ws = FakeWebSocket()
    ws.push("héllo")
    assert await _connection(ws).read() == "héllo".encode("utf-8")


@pytest.mark.asyncio
async def test_read_skips_control_frames():
    ws = FakeWebSocket()
    ws.inbox.put_nowait(WSMessage(WSMsgType.PING, b"", None))
    ws.push(b"data")
    assert await _connection(ws).read() == b"data"


@pytest.mark.asyncio
async def test_read_close_message_raises():
    ws = FakeWebSocket()
    ws.inbox.put_nowait(WSMessage(WSMsgType.CLOSE, 1000, ""))
    with pytest.raises(ConnectionError):
        await _connection(ws).read()


@pytest.mark.asyncio
async def test_read_timeout():
    ws = FakeWebSocket()
    with pytest.raises(asyncio.TimeoutError):
        await _connection(ws, read_timeout=0.01).read()


@pytest.mark.asyncio
async def test_write_binary_and_text():
    binary_ws = FakeWebSocket()
    await _connection(binary_ws, MessageType.BINARY).write(b"abc")
    assert binary_ws.sent == [("bytes", b"abc")]

    text_ws = FakeWebSocket()
    await _connection(text_ws, MessageType.TEXT).write(b"abc")
    assert text_ws.sent == [("str", "abc")]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_blocks_io():
    ws = FakeWebSocket()
    connection = _connection(ws)
    await connection.close()
    await connection.close()
    assert connection.closed
    assert ws.closed
    await asyncio.wait_for(connection.wait_closed(), 1)
    with pytest.raises(ConnectionError):
        await connection.write(b"x")
    with pytest.raises(ConnectionError):
        await connection.read()


@pytest.mark.asyncio
async def test_pipe_fans_out_owner_messages():
    owner_ws, first_ws, second_ws = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
    pipe = Pipe(_connection(owner_ws))
    pipe.add_connection(_connection(first_ws))
    pipe.add_connection(_connection(second_ws))
    assert len(pipe) == 2

    owner_ws.push(b"frame")
    assert await _eventually(lambda: first_ws.sent and second_ws.sent)
    assert first_ws.sent == [("bytes", b"frame")]
    assert second_ws.sent == [("bytes", b"frame")]
    await pipe.close()


@pytest.mark.asyncio
async def test_pipe_merges_into_owner():
    owner_ws, reader_ws = FakeWebSocket(), FakeWebSocket()
    pipe = Pipe(_connection(owner_ws))
    pipe.add_connection(_connection(reader_ws))

    reader_ws.push(b"upstream")
    assert await _eventually(lambda: owner_ws.sent)
    assert owner_ws.sent == [("bytes", b"upstream")]
    await pipe.close()


@pytest.mark.asyncio
async def test_pipe_drops_closed_reader():
    owner_ws, reader_ws = FakeWebSocket(), FakeWebSocket()
    pipe = Pipe(_connection(owner_ws))
    reader = _connection(reader_ws)
    pipe.add_connection(reader)

    reader_ws.inbox.put_nowait(WSMessage(WSMsgType.CLOSE, 1000, ""))
    assert await _eventually(lambda: len(pipe) == 0)
    assert reader.closed
    assert not owner_ws.closed
    await pipe.close()


@pytest.mark.asyncio
async def test_owner_close_closes_everything():
    owner_ws, reader_ws = FakeWebSocket(), FakeWebSocket()
    owner = _connection(owner_ws)
    reader = _connection(reader_ws)
    pipe = Pipe(owner)
    pipe.add_connection(reader)

    owner_ws.inbox.put_nowait(WSMessage(WSMsgType.CLOSE, 1000, ""))
    assert await _eventually(lambda: owner.closed and reader.closed)
    assert len(pipe) == 0
    with pytest.raises(ConnectionError):
        pipe.add_connection(_connection(FakeWebSocket()))