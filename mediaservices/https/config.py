"""Configuration for the HTTP server: address, timeouts, rate limits and CORS."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

_DEFAULT_ALLOWED_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"]
_DEFAULT_ALLOWED_HEADERS = [
    "Accept",
    "Accept-Language",
    "Content-Language",
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-Internal-API-Key",
]
_DEFAULT_EXPOSED_HEADERS = [
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
]


@dataclass
class Config:
    """HTTP server settings. Durations are in seconds; rate limits per minute."""

    addr: str = ""
    port: int = 0
    read_timeout: float = 0.0
    write_timeout: float = 0.0
    keep_hosting: bool = False

    internal_api_key: str = field(default="", repr=False)
    cert_path: str = ""
    key_file: str = ""
    trusted_networks: Optional[list[str]] = None

    public_rate_limit: int = 0
    internal_rate_limit: int = 0
    burst_size: int = 0

    allowed_origins: Optional[list[str]] = None
    allowed_methods: Optional[list[str]] = None
    allowed_headers: Optional[list[str]] = None
    exposed_headers: Optional[list[str]] = None
    allow_credentials: bool = False

    strict_mode: bool = False
    allow_wildcard: bool = False
    log_violations: bool = False
    max_age: int = 0

    def set_defaults(self) -> None:
        """Fill every unset field with its default value."""
        if not self.addr:
            self.addr = "0.0.0.0"
        if self.port == 0:
            self.port = 8080
        if self.read_timeout == 0:
            self.read_timeout = 30.0
        if self.write_timeout == 0:
            self.write_timeout = 30.0
        if self.public_rate_limit == 0:
            self.public_rate_limit = 60
        if self.internal_rate_limit == 0:
            self.internal_rate_limit = 300
        if self.burst_size == 0:
            self.burst_size = 10
        if not self.allowed_origins:
            self.allowed_origins = ["*"]
        if not self.allowed_methods:
            self.allowed_methods = list(_DEFAULT_ALLOWED_METHODS)
        if not self.allowed_headers:
            self.allowed_headers = list(_DEFAULT_ALLOWED_HEADERS)
        if not self.exposed_headers:
            self.exposed_headers = list(_DEFAULT_EXPOSED_HEADERS)
        # Wildcard origins are always enabled by the defaults.
        self.allow_wildcard = True
        if self.max_age == 0:
            self.max_age = 86400

    def add_allowed_headers(self, *args: str) -> None:
        if self.allowed_headers is not None:
            self.allowed_headers.extend(args)

    def add_trusted_networks(self, *args: str) -> None:
        if self.trusted_networks is not None:
            self.trusted_networks.extend(args)

    def add_allowed_origins(self, *args: str) -> None:
        if self.allowed_origins is not None:
            self.allowed_origins.extend(args)

    def add_allowed_methods(self, *args: str) -> None:
        if self.allowed_methods is not None:
            self.allowed_methods.extend(args)

    def add_exposed_headers(self, *args: str) -> None:
        if self.exposed_headers is not None:
            self.exposed_headers.extend(args)


def default_config() -> Config:
    """Return a configuration with every default applied."""
    config = Config()
    config.set_defaults()
    return config