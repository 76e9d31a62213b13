"""Streams, sessions and metrics shared by the RTSP relay server."""

from __future__ import annotations

import ssl
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Optional

from ..https.metrics import is_loopback

PacketCallback = Callable[[Any, Any], None]


class ServerState(IntEnum):
    DOWN = 0
    SETTING_UP = 1
    UP = 2
    ERROR = 3

    def __str__(self) -> str:
        return self.name


@dataclass
class ServerConfig:
    """RTSP server settings. Durations are in seconds."""

    port: int = 8554
    max_clients: int = 100
    max_streams: int = 10
    read_timeout: float = 0.0
    write_timeout: float = 0.0
    tls_context: Optional[ssl.SSLContext] = None
    publisher_session_timeout: float = 60.0
    client_session_timeout: float = 60.0
    allow_local_only: bool = False
    udp_rtp_address: str = ":8000"
    udp_rtcp_address: str = ":8001"
    multicast_ip_range: str = "224.1.0.0/16"
    multicast_rtp_port: int = 8002
    multicast_rtcp_port: int = 8003
    write_queue_size: int = 256
    reserve_attempts: int = 30
    reserve_delay: float = 3.0
    metrics_print_interval: float = 30.0

    read_required_scopes: list[str] = field(
        default_factory=lambda: ["rtsp-skyline-sonata"]
    )
    read_required_roles: list[str] = field(
        default_factory=lambda: ["user", "moderator", "admin", "viewer", "guest"]
    )
    write_required_scopes: list[str] = field(
        default_factory=lambda: ["rtsp-skyline-sonata"]
    )
    write_required_roles: list[str] = field(
        default_factory=lambda: ["user", "moderator", "admin"]
    )

    auth_url: str = ""
    auth_api_key: str = field(default="", repr=False)


def default_server_config() -> ServerConfig:
    """Return a configuration holding every default value."""
    return ServerConfig()


def is_localhost(remote_addr: str) -> bool:
    """Whether a "host:port" address comes from the local machine."""
    return is_loopback(remote_addr)


class Session:
    """One RTSP session: a publisher sending packets or a reader receiving them."""

    def __init__(self, remote_addr: str) -> None:
        self.remote_addr = remote_addr
        self.user_data: Optional[dict[str, Any]] = None
        self._callback: Optional[PacketCallback] = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def on_packet_rtp(self, callback: PacketCallback) -> None:
        """Set the function called with ``(media, packet)`` for each packet."""
        with self._lock:
            self._callback = callback

    def receive_packet(self, media: Any, packet: Any) -> None:
        """Hand a packet to the session; raises ConnectionError once closed."""
        with self._lock:
            if self._closed:
                raise ConnectionError("session closed")
            callback = self._callback
        if callback is not None:
            callback(media, packet)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._callback = None


class MediaStream:
    """A published stream that copies every packet to its reader sessions."""

    def __init__(self, description: Any) -> None:
        self.description = description
        self._readers: list[Session] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def readers(self) -> list[Session]:
        with self._lock:
            return [r for r in self._readers if not r.closed]

    def add_reader(self, session: Session) -> None:
        with self._lock:
            if self._closed:
                raise ConnectionError("stream closed")
            if session not in self._readers:
                self._readers.append(session)

    def write_packet_rtp(self, media: Any, packet: Any) -> None:
        """Deliver a packet to every open reader; raises ConnectionError once closed."""
        with self._lock:
            if self._closed:
                raise ConnectionError("stream closed")
            self._readers = [r for r in self._readers if not r.closed]
            readers = list(self._readers)
        for reader in readers:
            try:
                reader.receive_packet(media, packet)
            except ConnectionError:
                with self._lock:
                    if reader in self._readers:
                        self._readers.remove(reader)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._readers.clear()


@dataclass
class ClientSession:
    """A reader attached to a stream. Times are monotonic seconds."""

    id: str
    session: Optional[Session] = None
    remote_addr: str = ""
    is_local: bool = False
    conn_time: float = field(default_factory=time.monotonic)
    last_active: float = field(default_factory=time.monotonic)


@dataclass(eq=False)
class StreamInfo:
    """A published stream, its publisher and the readers attached to it."""

    stream: Optional[MediaStream] = None
    publisher: Optional[Session] = None
    description: Any = None
    publisher_last_active: float = field(default_factory=time.monotonic)
    clients: dict[str, ClientSession] = field(default_factory=dict)
    created_at: float = field(default_factory=time.monotonic)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def add_client(self, client: ClientSession) -> None:
        with self.lock:
            self.clients[client.id] = client

    def remove_client(self, client_id: str) -> None:
        with self.lock:
            self.clients.pop(client_id, None)

    def client_count(self) -> int:
        with self.lock:
            return len(self.clients)

    def clients_list(self) -> list[ClientSession]:
        with self.lock:
            return list(self.clients.values())


class ServerMetrics:
    """Counters and recent errors of the RTSP server."""

    def __init__(self, max_error_count: int = 10) -> None:
        self.max_error_count = max_error_count
        self.state = ServerState.DOWN
        self.total_connections = 0
        self.total_streams = 0
        self.recent_errors: list[str] = []
        self.last_update = 0.0
        self.total_uptime = 0.0
        self._lock = threading.Lock()

    def _touch(self) -> None:
        self.last_update = time.monotonic()

    def set_state(self, state: ServerState) -> None:
        with self._lock:
            self._touch()
            self.state = state

    def increment_total_connections(self) -> None:
        with self._lock:
            self._touch()
            self.total_connections += 1

    def decrement_total_connections(self) -> None:
        with self._lock:
            self._touch()
            if self.total_connections > 0:
                self.total_connections -= 1

    def reset_total_connections(self) -> None:
        with self._lock:
            self._touch()
            self.total_connections = 0

    def increment_total_streams(self) -> None:
        with self._lock:
            self._touch()
            self.total_streams += 1

    def decrement_total_streams(self) -> None:
        with self._lock:
            self._touch()
            if self.total_streams > 0:
                self.total_streams -= 1

    def reset_total_streams(self) -> None:
        with self._lock:
            self._touch()
            self.total_streams = 0

    def add_error(self, err: Any) -> None:
        """Record an error message, dropping the oldest when over the limit."""
        with self._lock:
            if len(self.recent_errors) > self.max_error_count:
                self.recent_errors = self.recent_errors[1:]
            self._touch()
            self.recent_errors.append(str(err))

    def snapshot(self) -> dict[str, Any]:
        """Consistent copy of every counter."""
        with self._lock:
            return {
                "state": self.state,
                "total_connections": self.total_connections,
                "total_streams": self.total_streams,
                "recent_errors": list(self.recent_errors),
                "last_update": self.last_update,
                "total_uptime": self.total_uptime,
            }