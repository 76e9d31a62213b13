"""Websocket connections and the pipes that relay data between them."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from aiohttp import WSMsgType

logger = logging.getLogger(__name__)

# Numeric value of a text message type; every other type is sent as binary.
_TEXT_MESSAGE = 1
_CLOSING_TYPES = frozenset(
    {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR}
)


class Connection:
    """A websocket read and written as a stream of byte messages."""

    def __init__(
        self,
        websocket: Any,
        message_type: int,
        read_timeout: float,
        write_timeout: float,
    ) -> None:
        self.websocket = websocket
        self.message_type = message_type
        self.read_timeout: Optional[float] = read_timeout or None
        self.write_timeout: Optional[float] = write_timeout or None
        self._closed = asyncio.Event()
        self._write_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        """Return once the connection has been closed."""
        await self._closed.wait()

    async def read(self) -> bytes:
        """Next data message; raises ConnectionError once the socket closes."""
        while True:
            if self.closed:
                raise ConnectionError("connection closed")
            message = await asyncio.wait_for(self.websocket.receive(), self.read_timeout)
            if message.type == WSMsgType.BINARY:
                return bytes(message.data)
            if message.type == WSMsgType.TEXT:
                return message.data.encode("utf-8")
            if message.type in _CLOSING_TYPES:
                raise ConnectionError(f"websocket closed ({message.type.name})")

    async def write(self, data: bytes) -> None:
        """Send one message with the configured message type."""
        if self.closed:
            raise ConnectionError("connection closed")
        async with self._write_lock:
            if int(self.message_type) == _TEXT_MESSAGE:
                sending = self.websocket.send_str(data.decode("utf-8", errors="replace"))
            else:
                sending = self.websocket.send_bytes(data)
            await asyncio.wait_for(sending, self.write_timeout)

    async def close(self) -> None:
        """Close the connection; calling it again does nothing."""
        if self.closed:
            return
        logger.debug("connection cancel called")
        self._closed.set()
        await self.websocket.close()


class Pipe:
    """Relays an owner's messages to every attached connection and back.

    Whatever the owner sends is copied to all attached connections; whatever
    any attached connection sends is forwarded to the owner. Must be created
    inside a running event loop.
    """

    def __init__(self, owner: Connection) -> None:
        self.owner = owner
        self._connections: list[Connection] = []
        self._readers: dict[Connection, asyncio.Task] = {}
        self._closing = False
        self._fanout = asyncio.get_running_loop().create_task(self._fan_out())

    def __len__(self) -> int:
        return len(self._connections)

    def add_connection(self, connection: Connection) -> None:
        """Attach a connection as both a receiver and a sender."""
        if self._closing:
            raise ConnectionError("pipe is closed")
        self._connections.append(connection)
        self._readers[connection] = asyncio.get_running_loop().create_task(
            self._merge(connection)
        )

    async def _fan_out(self) -> None:
        while True:
            try:
                data = await self.owner.read()
            except Exception as exc:
                logger.debug("owner stopped: %s", exc)
                break
            for connection in list(self._connections):
                try:
                    await connection.write(data)
                except Exception as exc:
                    logger.debug("dropping connection after write failure: %s", exc)
                    await self._drop(connection)
        await self.close()

    async def _merge(self, connection: Connection) -> None:
        while True:
            try:
                data = await connection.read()
            except Exception as exc:
                logger.debug("dropping connection after read failure: %s", exc)
                await self._drop(connection)
                return
            try:
                await self.owner.write(data)
            except Exception as exc:
                logger.debug("owner write failed: %s", exc)
                await self.close()
                return

    async def _drop(self, connection: Connection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
        task = self._readers.pop(connection, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        await connection.close()

    async def close(self) -> None:
        """Stop relaying and close the owner and every attached connection."""
        if self._closing:
            return
        self._closing = True
        current = asyncio.current_task()
        tasks = [t for t in (self._fanout, *self._readers.values()) if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        connections = list(self._connections)
        self._connections.clear()
        self._readers.clear()
        await self.owner.close()
        for connection in connections:
            await connection.close()