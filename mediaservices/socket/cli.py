"""Command that runs the websocket relay server."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional, Sequence

from ..https.config import Config
from .server import Server, default_server_config


def build_https_config() -> Config:
    """HTTP settings used by the relay command."""
    return Config(
        addr="127.0.0.1",
        port=8080,
        read_timeout=30.0,
        write_timeout=30.0,
        keep_hosting=True,
        public_rate_limit=60,
        internal_rate_limit=300,
        burst_size=10,
        allowed_origins=["*"],
        allowed_methods=["GET"],
        allowed_headers=[
            "Accept",
            "Accept-Language",
            "Content-Language",
            "Content-Type",
            "Authorization",
            "X-Requested-With",
            "X-Internal-API-Key",
        ],
        exposed_headers=[
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        allow_credentials=False,
        strict_mode=False,
        allow_wildcard=True,
        log_violations=True,
        max_age=86400,
    )


async def _run() -> None:
    server = Server(default_server_config(), build_https_config())
    try:
        await server.start_and_wait()
    finally:
        await server.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mediaservices-socket",
        description="Relay websocket streams between one writer and many readers.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())