import asyncio
import socket
import time

import pytest

from mediaservices.rtsp.server import Server
from mediaservices.rtsp.session import ServerConfig, ServerState, Session


def _opened(server, addr):
    session = Session(addr)
    server.on_session_open(session)
    return session


def _publish(server, path="cam", description="v=0"):
    publisher = _opened(server, "127.0.0.1:5000")
    assert server.on_announce(path, publisher, description) == 200
    return publisher


def test_default_config_when_none():
    server = Server(None)
    assert server.config.port == 8554
    assert server.get_all_streams() == {}


def test_validate_connection_local_only():
    server = Server(ServerConfig(allow_local_only=True))
    with pytest.raises(ConnectionRefusedError, match="only localhost connections allowed"):
        server.validate_connection("203.0.113.5:554")
    server.validate_connection("127.0.0.1:554")
    server.validate_connection("localhost:554")


def test_validate_connection_max_clients():
    server = Server(ServerConfig(max_clients=1))
    _publish(server)
    reader = _opened(server, "127.0.0.1:6000")
    server.on_setup("cam", reader)
    with pytest.raises(ConnectionRefusedError, match="maximum client limit reached"):
        server.validate_connection("127.0.0.1:7000")


def test_on_conn_open_counts_and_rejects():
    server = Server(ServerConfig(allow_local_only=True))
    assert server.on_conn_open("127.0.0.1:1234") is True
    assert server.metrics.snapshot()["total_connections"] == 1
    assert server.on_conn_open("203.0.113.5:1234") is False
    snap = server.metrics.snapshot()
    assert snap["total_connections"] == 1
    assert snap["recent_errors"] == ["only localhost connections allowed"]
    server.on_conn_close("127.0.0.1:1234", None)
    assert server.metrics.snapshot()["total_connections"] == 0


def test_session_open_sets_user_data():
    session = _opened(Server(None), "127.0.0.1:9000")
    assert session.user_data["remote_addr"] == "127.0.0.1:9000"
    assert session.user_data["is_local"] is True
    assert session.user_data["client_id"].startswith("127.0.0.1:9000-")


def test_describe_missing_and_present():
    server = Server(None)
    viewer = _opened(server, "127.0.0.1:6000")
    assert server.on_describe("cam", viewer) == (404, None)
    _publish(server, description="v=0 sdp")
    status, stream = server.on_describe("cam", viewer)
    assert status == 200
    assert stream is server.get_stream_info("cam").stream
    assert stream.description == "v=0 sdp"


def test_announce_limit_and_replace():
    server = Server(ServerConfig(max_streams=1))
    first = _publish(server)
    old_stream = server.get_stream_info("cam").stream
    other = _opened(server, "127.0.0.1:5001")
    assert server.on_announce("other", other, "v=0") == 503
    assert server.metrics.snapshot()["total_streams"] == 1

    server2 = Server(ServerConfig(max_streams=5))
    pub1 = _publish(server2)
    stream1 = server2.get_stream_info("cam").stream
    pub2 = _opened(server2, "127.0.0.1:5002")
    assert server2.on_announce("cam", pub2, "v=1") == 200
    assert stream1.closed and pub1.closed
    assert server2.get_stream_info("cam").publisher is pub2
    assert not old_stream.closed and not first.closed


def test_setup_publisher_and_reader():
    server = Server(None)
    publisher = _publish(server)
    assert server.on_setup("cam", publisher) == (200, None)
    reader = _opened(server, "127.0.0.1:6000")
    status, stream = server.on_setup("cam", reader)
    info = server.get_stream_info("cam")
    assert status == 200 and stream is info.stream
    assert [c.id for c in info.clients_list()] == [reader.user_data["client_id"]]
    assert server.on_setup("missing", reader) == (404, None)


def test_record_forwards_packets_and_refreshes_activity():
    server = Server(None)
    publisher = _publish(server)
    reader = _opened(server, "127.0.0.1:6000")
    _, stream = server.on_setup("cam", reader)
    received = []
    reader.on_packet_rtp(lambda media, packet: received.append((media, packet)))
    stream.add_reader(reader)
    info = server.get_stream_info("cam")
    info.publisher_last_active = time.monotonic() - 500
    client = info.clients_list()[0]
    client.last_active = time.monotonic() - 500

    assert server.on_record("cam", publisher) == 200
    publisher.receive_packet(0, b"abc")
    assert received == [(0, b"abc")]
    assert time.monotonic() - info.publisher_last_active < 100
    assert time.monotonic() - client.last_active < 100
    assert server.on_record("missing", publisher) == 404


def test_play_refreshes_client():
    server = Server(None)
    _publish(server)
    reader = _opened(server, "127.0.0.1:6000")
    server.on_setup("cam", reader)
    client = server.get_stream_info("cam").clients_list()[0]
    client.last_active = time.monotonic() - 500
    assert server.on_play("cam", reader) == 200
    assert time.monotonic() - client.last_active < 100


def test_session_close_of_publisher_removes_stream():
    server = Server(None)
    publisher = _publish(server)
    stream = server.get_stream_info("cam").stream
    server.on_session_close(publisher)
    assert server.get_stream_info("cam") is None
    assert stream.closed
    assert server.metrics.snapshot()["total_streams"] == 0


def test_session_close_of_reader_removes_client():
    server = Server(None)
    _publish(server)
    reader = _opened(server, "127.0.0.1:6000")
    server.on_setup("cam", reader)
    server.on_session_close(reader)
    assert server.get_stream_info("cam").client_count() == 0


def test_cleanup_removes_inactive_publisher():
    server = Server(None)
    publisher = _publish(server)
    server.get_stream_info("cam").publisher_last_active = time.monotonic() - 1000
    server.cleanup_inactive_sessions()
    assert server.get_all_streams() == {}
    assert publisher.closed


def test_cleanup_removes_inactive_client_only():
    server = Server(None)
    _publish(server)
    reader = _opened(server, "127.0.0.1:6000")
    server.on_setup("cam", reader)
    info = server.get_stream_info("cam")
    info.clients_list()[0].last_active = time.monotonic() - 1000
    server.cleanup_inactive_sessions()
    assert server.get_stream_info("cam") is info
    assert info.client_count() == 0


def test_get_all_streams_is_copy():
    server = Server(None)
    _publish(server)
    streams = server.get_all_streams()
    streams.clear()
    assert list(server.get_all_streams()) == ["cam"]


def test_print_detailed_metrics(capsys):
    server = Server(None)
    server.print_detailed_metrics()
    out = capsys.readouterr().out
    assert "Server State: DOWN" in out
    assert "Active Streams: None" in out
    _publish(server)
    server.metrics.add_error("boom")
    server.print_detailed_metrics()
    out = capsys.readouterr().out
    assert "cam: 0 clients" in out
    assert "1. boom" in out


@pytest.mark.asyncio
async def test_close_clears_streams():
    server = Server(None)
    publisher = _publish(server)
    stream = server.get_stream_info("cam").stream
    await server.close()
    assert server.get_all_streams() == {}
    assert stream.closed and publisher.closed
    snap = server.metrics.snapshot()
    assert snap["total_streams"] == 0 and snap["total_connections"] == 0


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _connect(port):
    for _ in range(100):
        try:
            return await asyncio.open_connection("127.0.0.1", port)
        except OSError:
            await asyncio.sleep(0.02)
    raise AssertionError("server did not start")


async def _exchange(reader, writer, request: bytes):
    writer.write(request)
    await writer.drain()
    head = (await reader.readuntil(b"\r\n\r\n")).decode()
    length = 0
    for line in head.split("\r\n"):
        if line.lower().startswith("content-length:"):
            length = int(line.split(":", 1)[1])
    body = await reader.readexactly(length) if length else b""
    return head, body


@pytest.mark.asyncio
async def test_announce_then_describe_over_tcp():
    port = _free_port()
    server = Server(ServerConfig(port=port, metrics_print_interval=60.0))
    await server.serve()
    sdp = b"v=0\r\ns=cam\r\n"
    try:
        pub_reader, pub_writer = await _connect(port)
        head, _ = await _exchange(
            pub_reader,
            pub_writer,
            f"ANNOUNCE rtsp://127.0.0.1:{port}/cam RTSP/1.0\r\nCSeq: 1\r\n"
            f"Content-Length: {len(sdp)}\r\n\r\n".encode() + sdp,
        )
        assert head.startswith("RTSP/1.0 200 OK")
        assert "CSeq: 1" in head
        assert server.get_stream_info("cam") is not None
        assert server.metrics.snapshot()["state"] == ServerState.UP

        view_reader, view_writer = await _connect(port)
        head, body = await _exchange(
            view_reader,
            view_writer,
            f"DESCRIBE rtsp://127.0.0.1:{port}/cam RTSP/1.0\r\nCSeq: 2\r\n\r\n".encode(),
        )
        assert head.startswith("RTSP/1.0 200 OK")
        assert body == sdp

        head, _ = await _exchange(
            view_reader,
            view_writer,
            f"DESCRIBE rtsp://127.0.0.1:{port}/none RTSP/1.0\r\nCSeq: 3\r\n\r\n".encode(),
        )
        assert head.startswith("RTSP/1.0 404 Not Found")
        pub_writer.close()
        view_writer.close()
    finally:
        await server.close()
    assert server.get_all_streams() == {}