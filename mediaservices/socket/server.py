"""Websocket relay server: one writer per room/topic, any number of readers."""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from aiohttp import web

from ..https.config import Config
from ..https.server import Server as HttpServer
from ..https.server import http_error
from .connection import Connection, Pipe

logger = logging.getLogger(__name__)

_SOCKET_HEADERS = (
    "Connections",
    "Upgrade",
    "Sec-WebSocket-Key",
    "Sec-WebSocket-Version",
    "Sec-WebSocket-Extensions",
    "Sec-WebSocket-Protocol",
    "Sec-WebSocket-Accept",
)


class MessageType(IntEnum):
    TEXT = 1
    BINARY = 2


@dataclass
class Metrics:
    """Connection and traffic counters. Uptime is in seconds."""

    uptime: float = 0.0
    active_connections: int = 0
    failed_connections: int = 0
    total_data_sent: int = 0
    total_data_recvd: int = 0
    _started: float = field(default_factory=time.monotonic, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def active(self) -> int:
        with self._lock:
            return self.active_connections

    def failed(self) -> int:
        with self._lock:
            return self.failed_connections

    def increase_active_connections(self) -> None:
        with self._lock:
            self.active_connections += 1

    def decrease_active_connections(self) -> None:
        with self._lock:
            self.active_connections -= 1

    def increase_failed_connections(self) -> None:
        with self._lock:
            self.failed_connections += 1

    def add_data_sent(self, length: int) -> None:
        with self._lock:
            self.total_data_sent += length

    def add_data_recvd(self, length: int) -> None:
        with self._lock:
            self.total_data_recvd += length

    def reset_uptime(self) -> None:
        with self._lock:
            self._started = time.monotonic()

    def update_uptime(self) -> None:
        with self._lock:
            self.uptime = time.monotonic() - self._started

    def marshal(self) -> bytes:
        """JSON encoding; uptime is given in nanoseconds."""
        with self._lock:
            payload = {
                "uptime": round(self.uptime * 1_000_000_000),
                "active_connections": self.active_connections,
                "failed_connections": self.failed_connections,
                "total_data_sent": self.total_data_sent,
                "total_data_recvd": self.total_data_recvd,
            }
        return json.dumps(payload).encode()


@dataclass
class ServerConfig:
    """Relay settings. ``None`` for rooms or topics allows every value."""

    total_connections: int = 0
    write_required_scope: Optional[list[str]] = None
    write_required_roles: Optional[list[str]] = None
    read_required_scope: Optional[list[str]] = None
    read_required_roles: Optional[list[str]] = None
    allowed_rooms: Optional[list[str]] = None
    allowed_topics: Optional[list[str]] = None
    write_message_type: int = 0
    write_timeout: float = 0.0
    read_timeout: float = 0.0

    def set_defaults(self) -> None:
        if self.total_connections == 0:
            self.total_connections = 100
        if not self.write_required_scope:
            self.write_required_scope = ["socket-skyline-sonata"]
        if not self.write_required_roles:
            self.write_required_roles = ["user", "moderator", "admin"]
        if not self.read_required_scope:
            self.read_required_scope = ["rtsp-skyline-sonata"]
        if not self.read_required_roles:
            self.read_required_roles = ["user", "moderator", "admin", "viewer", "guest"]
        if not self.allowed_rooms:
            self.allowed_rooms = None
        if not self.allowed_topics:
            self.allowed_topics = None
        if self.write_message_type == 0:
            self.write_message_type = MessageType.BINARY
        if self.write_timeout == 0:
            self.write_timeout = 600.0
        if self.read_timeout == 0:
            self.read_timeout = 600.0


def default_server_config() -> ServerConfig:
    config = ServerConfig()
    config.set_defaults()
    return config


def get_path_variable(request: web.Request, name: str) -> str:
    """Value of a route parameter; raises ValueError when it is empty."""
    params = request.get("path_params") or request.match_info
    value = params.get(name, "")
    if not value:
        raise ValueError("path value empty")
    return value


class Server:
    """Websocket relay served over the HTTP server's router."""

    def __init__(self, config: ServerConfig, https_config: Config) -> None:
        https_config = dataclasses.replace(
            https_config,
            allowed_headers=(
                list(https_config.allowed_headers)
                if https_config.allowed_headers is not None
                else None
            ),
        )
        https_config.add_allowed_headers(*_SOCKET_HEADERS)

        self.http_server = HttpServer(https_config)
        self.config = config
        self.metrics = Metrics()
        self._paths: dict[str, Pipe] = {}
        self._lock = threading.Lock()
        self._closed_flag = False
        self._closed: Optional[object] = None

        http = self.http_server
        http.add_request_handler(
            "GET /ws/write/{room}/{topic}",
            http.logging_middleware(
                http.cors_middleware(http.rate_limit_middleware(self.ws_write_handler, True))
            ),
        )
        http.add_request_handler(
            "GET /ws/read/{room}/{topic}",
            http.logging_middleware(
                http.cors_middleware(http.rate_limit_middleware(self.ws_read_handler, True))
            ),
        )
        http.add_request_handler(
            "GET /metrics",
            http.logging_middleware(
                http.cors_middleware(
                    http.internal_auth_middleware(
                        http.rate_limit_middleware(self.metrics_handler, False)
                    )
                )
            ),
        )

    def _closed_event(self):
        import asyncio

        if self._closed is None:
            self._closed = asyncio.Event()
        return self._closed

    async def serve(self) -> None:
        await self.http_server.serve()

    async def start_and_wait(self) -> None:
        """Serve until the server is closed."""
        await self.serve()
        logger.info("starting websocket server")
        await self._closed_event().wait()

    async def upgrade_request(self, request: web.Request) -> web.WebSocketResponse:
        """Upgrade to a websocket, enforcing the connection limit."""
        if self.metrics.active() + 1 > self.config.total_connections:
            self.metrics.increase_failed_connections()
            logger.warning(
                "current number of clients: %d; max allowed: %d",
                self.metrics.active(),
                self.config.total_connections,
            )
            raise ConnectionError("max clients reached")
        self.metrics.increase_active_connections()

        websocket = web.WebSocketResponse()
        try:
            if not websocket.can_prepare(request).ok:
                raise web.HTTPBadRequest(text="not a websocket handshake")
            await websocket.prepare(request)
        except web.HTTPException as exc:
            self.metrics.decrease_active_connections()
            self.metrics.increase_failed_connections()
            raise ConnectionError(
                f"error while upgrading http request to websocket; err: {exc}"
            ) from exc
        return websocket

    async def metrics_handler(self, request: web.Request) -> web.Response:
        self.metrics.update_uptime()
        try:
            body = self.metrics.marshal()
        except (TypeError, ValueError) as exc:
            self.http_server.append_errors(f"Failed to marshal metrics: {exc}")
            return http_error(500, "Failed to marshal metrics")
        # The encoded metrics travel as a base64 JSON string.
        encoded = json.dumps(base64.b64encode(body).decode("ascii")) + "\n"
        return web.Response(status=200, body=encoded.encode(), content_type="application/json")

    def _connection(self, websocket: web.WebSocketResponse) -> Connection:
        return Connection(
            websocket,
            self.config.write_message_type,
            self.config.read_timeout,
            self.config.write_timeout,
        )

    async def ws_write_handler(self, request: web.Request) -> web.StreamResponse:
        try:
            room = get_path_variable(request, "room")
        except ValueError:
            return http_error(400, "invalid room path parameter")
        if self.config.allowed_rooms is not None and room not in self.config.allowed_rooms:
            return http_error(403, "room not allowed")

        try:
            topic = get_path_variable(request, "topic")
        except ValueError:
            return http_error(400, "topic parameter required")
        if self.config.allowed_topics is not None and topic not in self.config.allowed_topics:
            return http_error(403, "topic not allowed")

        path = f"{room}/{topic}"
        logger.info("request for %s", path)
        if self.has_path(path):
            return http_error(500, "Resource already exists")

        try:
            websocket = await self.upgrade_request(request)
        except ConnectionError as exc:
            logger.warning("error while upgrading websocket: %s", exc)
            return http_error(500, "Failed to upgrade to websocket")

        connection = self._connection(websocket)
        pipe = Pipe(connection)
        self.add_path(path, pipe)
        try:
            await connection.wait_closed()
        finally:
            await pipe.close()
            await connection.close()
            self.remove_path(path)
            logger.info("writer for %s closed", path)
        return websocket

    async def ws_read_handler(self, request: web.Request) -> web.StreamResponse:
        try:
            room = get_path_variable(request, "room")
        except ValueError:
            return http_error(400, "invalid room path parameter")
        try:
            topic = get_path_variable(request, "topic")
        except ValueError:
            return http_error(400, "topic parameter required")

        path = f"{room}/{topic}"
        try:
            pipe = self.get_path(path)
        except LookupError as exc:
            return http_error(404, str(exc.args[0]))

        try:
            websocket = await self.upgrade_request(request)
        except ConnectionError:
            return http_error(500, "Failed to upgrade to websocket")

        connection = self._connection(websocket)
        try:
            pipe.add_connection(connection)
            await connection.wait_closed()
        except ConnectionError as exc:
            logger.info("reader for %s not attached: %s", path, exc)
        finally:
            await connection.close()
            logger.info("reader for %s closed", path)
        return websocket

    def add_path(self, path: str, pipe: Pipe) -> None:
        with self._lock:
            self._paths[path] = pipe

    def get_path(self, path: str) -> Pipe:
        """Pipe registered for ``path``; raises LookupError when absent."""
        with self._lock:
            try:
                return self._paths[path]
            except KeyError:
                raise LookupError("topic does not exists") from None

    def has_path(self, path: str) -> bool:
        with self._lock:
            return path in self._paths

    def remove_path(self, path: str) -> None:
        with self._lock:
            self._paths.pop(path, None)

    async def close(self) -> None:
        """Shut down; calling it again does nothing."""
        if self._closed_flag:
            return
        self._closed_flag = True
        self._closed_event().set()
        self.metrics = Metrics()
        self.config = ServerConfig()
        await self.http_server.close()