"""RTSP relay server: publishers announce streams, readers play them."""

from __future__ import annotations

import asyncio
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from http import HTTPStatus
from typing import Any, Optional
from urllib.parse import urlsplit

from .session import (
    ClientSession,
    MediaStream,
    ServerConfig,
    ServerMetrics,
    ServerState,
    Session,
    StreamInfo,
    default_server_config,
    is_localhost,
)

_PUBLIC_METHODS = "DESCRIBE, ANNOUNCE, SETUP, PLAY, RECORD, TEARDOWN, OPTIONS"
_CLEANUP_INTERVAL = 30.0
_MAX_RETRY_DELAY = 30.0
_UNSUPPORTED_TRANSPORT = 461
_EXTRA_REASONS = {_UNSUPPORTED_TRANSPORT: "Unsupported Transport"}


@dataclass
class _Request:
    method: str
    url: str
    headers: dict[str, str]


def _format_addr(peer: Any) -> str:
    if not peer:
        return "unknown"
    host, port = peer[0], peer[1]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _format_duration(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def _request_path(url: str) -> str:
    parts = urlsplit(url)
    path = parts.path if parts.scheme else url.split("?", 1)[0]
    return path.strip("/")


def _parse_request(head: bytes) -> _Request:
    lines = head.decode("utf-8", errors="replace").split("\r\n")
    fields = lines[0].split(" ")
    if len(fields) != 3 or not fields[2].startswith("RTSP/"):
        raise ValueError(f"malformed request line: {lines[0]!r}")
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise ValueError(f"malformed header: {line!r}")
        headers[name.strip().lower()] = value.strip()
    return _Request(fields[0].upper(), fields[1], headers)


def _response(status: int, cseq: str, headers: dict[str, str], body: bytes) -> bytes:
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = _EXTRA_REASONS.get(status, "Unknown")
    lines = [f"RTSP/1.0 {status} {reason}", f"CSeq: {cseq}"]
    lines.extend(f"{name}: {value}" for name, value in headers.items())
    if body:
        lines.append(f"Content-Length: {len(body)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + body


def _description_bytes(description: Any) -> bytes:
    if isinstance(description, bytes):
        return description
    return str(description if description is not None else "").encode()


def _write_frame(writer: asyncio.StreamWriter, media: Any, packet: Any) -> None:
    channel = media if isinstance(media, int) and 0 <= media < 256 else 0
    payload = bytes(packet)
    writer.write(b"$" + bytes([channel]) + len(payload).to_bytes(2, "big") + payload)


class Server:
    """Relays RTP packets from one publisher per path to its readers."""

    def __init__(self, config: Optional[ServerConfig] = None) -> None:
        self.config = config if config is not None else default_server_config()
        self.metrics = ServerMetrics(max_error_count=10)
        self._streams: dict[str, StreamInfo] = {}
        self._lock = threading.RLock()
        self._stopped = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._handlers: set[asyncio.Task] = set()
        self._listener: Optional[asyncio.AbstractServer] = None

    # Lifecycle

    async def serve(self) -> None:
        """Start listening and the background maintenance tasks."""
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._connection_routine()),
                asyncio.create_task(self._cleanup_routine()),
                asyncio.create_task(self._print_metrics()),
            ]
        self.metrics.set_state(ServerState.UP)

    async def serve_and_wait(self) -> None:
        """Serve until the server is closed."""
        await self.serve()
        await self._stopped.wait()

    async def close(self) -> None:
        """Close every stream and stop serving."""
        print("Stopping RTSP server...")
        self._stopped.set()
        with self._lock:
            for path, info in self._streams.items():
                if info.stream is not None:
                    info.stream.close()
                if info.publisher is not None:
                    info.publisher.close()
                print(f"Closed stream: {path}")
            self._streams = {}
        if self._listener is not None:
            self._listener.close()
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._listener is not None:
            try:
                await asyncio.wait_for(self._listener.wait_closed(), 5.0)
            except asyncio.TimeoutError:
                pass
            self._listener = None
        self.metrics.reset_total_streams()
        self.metrics.reset_total_connections()
        print("RTSP server stopped")

    async def _wait_stopped(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _connection_routine(self) -> None:
        attempt = 0
        delay = self.config.reserve_delay
        max_attempts = self.config.reserve_attempts
        port = self.config.port
        while True:
            self.metrics.set_state(ServerState.SETTING_UP)
            if self._stopped.is_set():
                print("RTSP server connection manager stopping due to cancellation")
                self.metrics.set_state(ServerState.DOWN)
                return
            print(f"Attempting to start the RTSP server: 0.0.0.0:{port}")
            try:
                self._listener = await asyncio.start_server(
                    self._handle_client, "0.0.0.0", port, ssl=self.config.tls_context
                )
            except OSError as exc:
                self.metrics.set_state(ServerState.ERROR)
                self.metrics.add_error(exc)
                print(f"RTSP server start failed: {exc}")
                if max_attempts == 0:
                    print("No retries configured, stopping server start attempts")
                    self.metrics.set_state(ServerState.DOWN)
                    return
                if max_attempts > 0 and attempt >= max_attempts:
                    print(f"Maximum retry attempts ({max_attempts}) reached, stopping")
                    self.metrics.set_state(ServerState.DOWN)
                    return
                print(f"Retrying RTSP server start in {delay}s (attempt {attempt + 1})")
                if await self._wait_stopped(delay):
                    print("RTSP connection manager stopping during retry delay")
                    self.metrics.set_state(ServerState.DOWN)
                    return
                delay = min(delay * 1.5, _MAX_RETRY_DELAY)
                attempt += 1
                continue
            self.metrics.set_state(ServerState.UP)
            try:
                await self._stopped.wait()
            finally:
                self._listener.close()
                self.metrics.set_state(ServerState.DOWN)
            return

    async def _cleanup_routine(self) -> None:
        while not await self._wait_stopped(_CLEANUP_INTERVAL):
            self.cleanup_inactive_sessions()

    async def _print_metrics(self) -> None:
        while not await self._wait_stopped(self.config.metrics_print_interval):
            self.print_detailed_metrics()
        print("Metrics printing is stopped due to cancellation")

    # Maintenance

    def cleanup_inactive_sessions(self) -> None:
        """Drop streams with a silent publisher and readers that went idle."""
        now = time.monotonic()
        with self._lock:
            for path, info in list(self._streams.items()):
                with info.lock:
                    inactive = now - info.publisher_last_active > self.config.publisher_session_timeout
                if inactive:
                    print(f"Publisher inactive for stream {path}, closing stream")
                    if info.stream is not None:
                        info.stream.close()
                    if info.publisher is not None:
                        info.publisher.close()
                    del self._streams[path]
                    self.metrics.decrement_total_streams()
                    continue
                with info.lock:
                    stale = [
                        client_id
                        for client_id, client in info.clients.items()
                        if now - client.last_active > self.config.client_session_timeout
                    ]
                    for client_id in stale:
                        del info.clients[client_id]
                        self.metrics.decrement_total_connections()
                        print(f"Removed inactive client {client_id} from stream {path}")

    def print_detailed_metrics(self) -> None:
        snapshot = self.metrics.snapshot()
        print(f"\n=== RTSP Server Metrics [{datetime.now():%H:%M:%S}] ===")
        print(f"Server State: {snapshot['state']}")
        print(f"Total Connections: {snapshot['total_connections']}")
        print(f"Total Streams: {snapshot['total_streams']}")
        print(f"Uptime: {_format_duration(snapshot['total_uptime'])}")
        since = time.monotonic() - snapshot["last_update"]
        print(f"Last Update: {_format_duration(since)} ago")
        with self._lock:
            if self._streams:
                print("\nActive Streams:")
                now = time.monotonic()
                for path, info in self._streams.items():
                    active = _format_duration(now - info.created_at)
                    print(f"  {path}: {info.client_count()} clients, active for {active}")
            else:
                print("\nActive Streams: None")
        errors = snapshot["recent_errors"]
        if errors:
            print("\nRecent Errors:")
            for number, err in enumerate(errors, start=1):
                print(f"  {number}. {err}")
        print("=====================================")

    # Connection and session events

    def validate_connection(self, remote_addr: str) -> None:
        """Raise ConnectionRefusedError when the connection must be rejected."""
        if self.config.allow_local_only and not is_localhost(remote_addr):
            raise ConnectionRefusedError("only localhost connections allowed")
        with self._lock:
            total = sum(info.client_count() for info in self._streams.values())
        if total >= self.config.max_clients:
            raise ConnectionRefusedError("maximum client limit reached")

    def on_conn_open(self, remote_addr: str) -> bool:
        """Count an accepted connection; return False when it is rejected."""
        try:
            self.validate_connection(remote_addr)
        except ConnectionRefusedError as exc:
            print(f"Connection rejected: {exc}")
            self.metrics.add_error(exc)
            return False
        self.metrics.increment_total_connections()
        total = self.metrics.snapshot()["total_connections"]
        print(f"Connection opened from {remote_addr} (total: {total})")
        return True

    def on_conn_close(self, remote_addr: str, error: Any) -> None:
        self.metrics.decrement_total_connections()
        print(f"Connection closed from {remote_addr}: {error}")

    def on_session_open(self, session: Session) -> None:
        client_id = f"{session.remote_addr}-{time.time_ns()}"
        print(f"Session opened: {client_id} from {session.remote_addr}")
        session.user_data = {
            "client_id": client_id,
            "remote_addr": session.remote_addr,
            "is_local": is_localhost(session.remote_addr),
            "conn_time": time.monotonic(),
        }

    def on_session_close(self, session: Session) -> None:
        user_data = session.user_data
        if not isinstance(user_data, dict):
            return
        client_id = user_data.get("client_id", "")
        print(f"Session closed: {client_id}")
        with self._lock:
            for path, info in list(self._streams.items()):
                info.remove_client(client_id)
                if info.publisher is session:
                    if info.stream is not None:
                        info.stream.close()
                    del self._streams[path]
                    print(f"Publisher disconnected, stream {path} closed")
                self.metrics.decrement_total_streams()

    # Request events

    def on_describe(self, path: str, session: Session) -> tuple[int, Optional[MediaStream]]:
        print(f"Describe request for path: {path} from {session.remote_addr}")
        info = self.get_stream_info(path)
        if info is None or info.stream is None:
            print(f"Stream not found: {path}")
            return HTTPStatus.NOT_FOUND, None
        return HTTPStatus.OK, info.stream

    def on_announce(self, path: str, session: Session, description: Any) -> int:
        print(f"Announce request for path: {path} from {session.remote_addr}")
        with self._lock:
            if len(self._streams) >= self.config.max_streams:
                print("Maximum stream limit reached")
                return HTTPStatus.SERVICE_UNAVAILABLE
            existing = self._streams.get(path)
            if existing is not None:
                if existing.stream is not None:
                    existing.stream.close()
                if existing.publisher is not None:
                    existing.publisher.close()
                print(f"Replaced existing stream: {path}")
            self._streams[path] = StreamInfo(
                stream=MediaStream(description),
                publisher=session,
                description=description,
            )
            print(f"Stream created: {path}")
            self.metrics.increment_total_streams()
        return HTTPStatus.OK

    def on_setup(self, path: str, session: Session) -> tuple[int, Optional[MediaStream]]:
        print(f"Setup request for path: {path} from {session.remote_addr}")
        info = self.get_stream_info(path)
        if info is None or info.stream is None:
            print(f"Stream not found for setup: {path}")
            return HTTPStatus.NOT_FOUND, None
        if info.publisher is session:
            print(f"Setup for publisher on path: {path}")
            return HTTPStatus.OK, None
        user_data = session.user_data
        if isinstance(user_data, dict):
            client = ClientSession(
                id=user_data.get("client_id", ""),
                session=session,
                remote_addr=user_data.get("remote_addr", ""),
                is_local=bool(user_data.get("is_local", False)),
                conn_time=user_data.get("conn_time", time.monotonic()),
                last_active=time.monotonic(),
            )
            info.add_client(client)
            print(f"Client {client.id} added to stream {path}")
        return HTTPStatus.OK, info.stream

    def on_play(self, path: str, session: Session) -> int:
        print(f"Play request for path: {path} from {session.remote_addr}")
        info = self.get_stream_info(path)
        if info is not None and isinstance(session.user_data, dict):
            client_id = session.user_data.get("client_id", "")
            with info.lock:
                client = info.clients.get(client_id)
                if client is not None:
                    client.last_active = time.monotonic()
        return HTTPStatus.OK

    def on_record(self, path: str, session: Session) -> int:
        print(f"Record request for path: {path} from {session.remote_addr}")
        info = self.get_stream_info(path)
        if info is None or info.stream is None:
            print(f"Stream not found for record: {path}")
            return HTTPStatus.NOT_FOUND
        stream = info.stream

        def forward(media: Any, packet: Any) -> None:
            try:
                stream.write_packet_rtp(media, packet)
            except ConnectionError as exc:
                self.metrics.add_error(exc)
                print(f"Error writing RTP packet to stream {path}: {exc}")
                return
            now = time.monotonic()
            with info.lock:
                info.publisher_last_active = now
                for client in info.clients.values():
                    client.last_active = now

        session.on_packet_rtp(forward)
        return HTTPStatus.OK

    def get_stream_info(self, path: str) -> Optional[StreamInfo]:
        with self._lock:
            return self._streams.get(path)

    def get_all_streams(self) -> dict[str, StreamInfo]:
        with self._lock:
            return dict(self._streams)

    # Protocol

    def _stream_path(self, path: str) -> str:
        with self._lock:
            if path in self._streams or "/" not in path:
                return path
            parent = path.rsplit("/", 1)[0]
            return parent if parent in self._streams else path

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        remote = _format_addr(writer.get_extra_info("peername"))
        if not self.on_conn_open(remote):
            writer.close()
            self._handlers.discard(task)
            return
        session = Session(remote)
        self.on_session_open(session)
        error: Optional[BaseException] = None
        try:
            await self._serve_session(session, secrets.token_hex(8), reader, writer)
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ConnectionError, ValueError) as exc:
            error = exc
        finally:
            session.close()
            writer.close()
            self.on_conn_close(remote, error)
            self.on_session_close(session)
            self._handlers.discard(task)

    async def _serve_session(
        self,
        session: Session,
        session_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        while True:
            first = await reader.read(1)
            if not first:
                return
            if first == b"$":
                header = await reader.readexactly(3)
                payload = await reader.readexactly(int.from_bytes(header[1:], "big"))
                try:
                    session.receive_packet(header[0], payload)
                except ConnectionError:
                    return
                continue
            request = _parse_request((first + await reader.readuntil(b"\r\n\r\n"))[:-4])
            length = int(request.headers.get("content-length", "0") or 0)
            body = await reader.readexactly(length) if length > 0 else b""
            status, headers, payload = self._dispatch(session, session_id, request, body, writer)
            writer.write(_response(status, request.headers.get("cseq", "0"), headers, payload))
            await writer.drain()
            if request.method == "TEARDOWN":
                return

    def _dispatch(
        self,
        session: Session,
        session_id: str,
        request: _Request,
        body: bytes,
        writer: asyncio.StreamWriter,
    ) -> tuple[int, dict[str, str], bytes]:
        path = _request_path(request.url)
        method = request.method
        if method == "OPTIONS":
            return HTTPStatus.OK, {"Public": _PUBLIC_METHODS}, b""
        if method == "DESCRIBE":
            status, stream = self.on_describe(path, session)
            if stream is None:
                return status, {}, b""
            headers = {
                "Content-Type": "application/sdp",
                "Content-Base": request.url.rstrip("/") + "/",
            }
            return status, headers, _description_bytes(stream.description)
        if method == "ANNOUNCE":
            description = body.decode("utf-8", errors="replace")
            return self.on_announce(path, session, description), {}, b""
        if method == "SETUP":
            transport = request.headers.get("transport", "")
            if "interleaved" not in transport:
                return _UNSUPPORTED_TRANSPORT, {}, b""
            status, _ = self.on_setup(self._stream_path(path), session)
            return status, {"Transport": transport, "Session": session_id}, b""
        if method == "PLAY":
            stream_path = self._stream_path(path)
            status = self.on_play(stream_path, session)
            info = self.get_stream_info(stream_path)
            if status == HTTPStatus.OK and info is not None and info.stream is not None:
                session.on_packet_rtp(partial(_write_frame, writer))
                try:
                    info.stream.add_reader(session)
                except ConnectionError:
                    return HTTPStatus.NOT_FOUND, {}, b""
            return status, {"Session": session_id}, b""
        if method == "RECORD":
            return self.on_record(self._stream_path(path), session), {"Session": session_id}, b""
        if method == "TEARDOWN":
            return HTTPStatus.OK, {"Session": session_id}, b""
        return HTTPStatus.NOT_IMPLEMENTED, {}, b""