import json

import pytest

from mediaservices.https.metrics import (
    BufferedErrors,
    Health,
    ServerState,
    is_loopback,
)


@pytest.mark.parametrize(
    "addr, expected",
    [
        ("127.0.0.1:80", True),
        ("[::1]:80", True),
        ("localhost:80", True),
        ("LOCALHOST:80", True),
        ("127.0.0.1", False),
        ("::1", False),
        ("192.168.1.1:80", False),
        ("example.com:80", False),
    ],
)
def test_is_loopback(addr, expected):
    assert is_loopback(addr) is expected


def test_buffered_errors_drops_oldest():
    buf = BufferedErrors(3)
    for msg in ["a", "b", "c", "d"]:
        buf.add(msg)
    assert buf.to_list() == ["b", "c", "d"]
    assert len(buf) == 3


def test_health_marshal_initial():
    health = Health(BufferedErrors(10))
    data = json.loads(health.marshal())
    assert data["state"] == ""
    assert data["recent_errors"] == []


def test_health_state_and_errors():
    health = Health(BufferedErrors(10))
    health.set_state(ServerState.UP)
    health.add_error("boom")
    data = json.loads(health.marshal())
    assert data["state"] == "SERVER_ONLINE"
    assert data["recent_errors"] == ["boom"]
    health.set_state(ServerState.DOWN)
    assert json.loads(health.marshal())["state"] == "SERVER_OFFLINE"


def test_health_without_buffer_ignores_errors():
    health = Health()
    health.add_error("ignored")
    assert json.loads(health.marshal())["recent_errors"] is None