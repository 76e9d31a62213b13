"""Server health state and a bounded buffer of recent errors."""

from __future__ import annotations

import ipaddress
import json
import threading
from collections import deque
from enum import Enum
from typing import Optional


class ServerState(str, Enum):
    DOWN = "SERVER_OFFLINE"
    UP = "SERVER_ONLINE"


def split_host_port(address: str) -> tuple[str, str]:
    """Split "host:port" or "[host]:port"; raise ValueError when malformed."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            raise ValueError(f"malformed address: {address!r}")
        return address[1:end], address[end + 2 :]
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address: {address!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address: {address!r}")
    return host, port


def is_loopback(remote_addr: str) -> bool:
    """Whether a "host:port" address refers to the loopback interface."""
    try:
        host, _ = split_host_port(remote_addr)
    except ValueError:
        return False
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return host.lower() == "localhost"
    return ip.is_loopback


class BufferedErrors:
    """Keeps the most recent error messages, dropping the oldest first."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._errors: deque[str] = deque(maxlen=max(max_size, 0))
        self._lock = threading.Lock()

    def add(self, err: str) -> None:
        with self._lock:
            self._errors.append(err)

    def to_list(self) -> list[str]:
        with self._lock:
            return list(self._errors)

    def __len__(self) -> int:
        with self._lock:
            return len(self._errors)


class Health:
    """Server state plus recent errors, serialisable to JSON."""

    def __init__(self, recent_errors: Optional[BufferedErrors] = None) -> None:
        self.state: Optional[ServerState] = None
        self.recent_errors = recent_errors
        self._lock = threading.Lock()

    def set_state(self, state: ServerState) -> None:
        with self._lock:
            self.state = state

    def marshal(self) -> bytes:
        with self._lock:
            payload = {
                "state": self.state.value if self.state is not None else "",
                "recent_errors": (
                    self.recent_errors.to_list() if self.recent_errors is not None else None
                ),
            }
        return json.dumps(payload).encode()

    def add_error(self, err: str) -> None:
        with self._lock:
            if self.recent_errors is not None:
                self.recent_errors.add(err)