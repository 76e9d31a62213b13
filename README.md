# mediaservices

Asyncio building blocks for relaying live data between machines:

- **`mediaservices.https`**: an aiohttp-based HTTP server with its own router,
  CORS checks, per-client rate limiting, request logging and a JSON health
  endpoint.
- **`mediaservices.socket`**: a WebSocket relay built on that server. One
  writer claims a `room/topic` path and any number of readers receive what it
  sends. What readers send goes back to the writer.
- **`mediaservices.rtsp`**: an RTSP relay server. A publisher announces a
  stream on a path and records RTP packets into it, and readers play them.

## Installation

```
pip install .
```

To run the test suite, install the test extra and run pytest:

```
pip install ".[test]"
pytest
```

## Running the WebSocket relay

```
mediaservices-socket
```

The command takes no options. It listens on `127.0.0.1:8080`, retries every
five seconds if the port cannot be bound, and runs until interrupted. It
serves these endpoints:

| Method | Path                        | Purpose                                        |
|--------|-----------------------------|------------------------------------------------|
| GET    | `/ws/write/{room}/{topic}`  | Claim a topic as its single writer (WebSocket) |
| GET    | `/ws/read/{room}/{topic}`   | Join an existing topic as a reader (WebSocket) |
| GET    | `/metrics`                  | Connection and traffic counters                |
| GET    | `/internal/status`          | Server state and the last 10 errors as JSON    |

A topic exists only while its writer is connected. A second writer on a path
that is taken gets `500 Resource already exists`; a reader on a path that does
not exist gets `404`. Once the connection limit is reached, further upgrades
are refused with `500 Failed to upgrade to websocket`.

`/internal/status` answers with `{"state": ..., "recent_errors": [...]}`.
`/metrics` answers with a JSON string holding the base64 encoding of a JSON
object with `uptime` (nanoseconds), `active_connections`,
`failed_connections`, `total_data_sent` and `total_data_recvd`. The relay
counts every accepted upgrade in `active_connections` and every refused one in
`failed_connections`; it does not update the data totals itself.

## Using the pieces in code

### HTTP server

`mediaservices.https.server.Server` takes a `Config` and routes requests to
aiohttp handlers (`async def handler(request) -> web.StreamResponse`).
Patterns look like `"GET /items/{item_id}"`; `{name...}` matches the rest of
the path, a trailing `/` matches a prefix, and captured values are in
`request["path_params"]`. Unmatched paths get `404`, wrong methods `405`.

```python
import asyncio

from aiohttp import web

from mediaservices.https.config import default_config
from mediaservices.https.server import Server


async def hello(request: web.Request) -> web.Response:
    return web.Response(text="hello")


async def main() -> None:
    config = default_config()
    config.add_allowed_origins("https://app.example.com")

    server = Server(config)
    server.add_request_handler(
        "GET /hello",
        server.logging_middleware(
            server.cors_middleware(server.rate_limit_middleware(hello, True))
        ),
    )
    try:
        await server.serve_and_wait()
    finally:
        await server.close()


asyncio.run(main())
```

`default_config()` listens on `0.0.0.0:8080`. It allows 60 public and 300
internal requests per minute per client IP, with a burst of 10 (twice that for
internal routes); a refused request gets `429` with `X-RateLimit-*` headers.
The client IP comes from `X-Forwarded-For`, then `X-Real-IP`, then the peer
address. Every origin is allowed unless you narrow `allowed_origins`; an entry
such as `*.example.com` matches any subdomain of `example.com`. With
`strict_mode` set, requests from disallowed origins, methods or headers are
rejected with `403` (or `405` for a disallowed method on an actual request).
When `cert_path` and `key_file` are both set the server serves TLS.

### WebSocket relay

```python
from mediaservices.https.config import default_config
from mediaservices.socket.server import MessageType, Server, default_server_config

relay_config = default_server_config()
relay_config.allowed_rooms = ["lab"]
relay_config.allowed_topics = ["telemetry", "video"]
relay_config.write_message_type = MessageType.TEXT

relay = Server(relay_config, default_config())
# inside a running event loop:
# await relay.start_and_wait()
```

`allowed_rooms` or `allowed_topics` left as `None` allows every room or topic;
others get `403`. By default the relay accepts at most 100 connections, sends
binary messages, and times out reads and writes after ten minutes.
`mediaservices.socket.connection` holds the `Connection` and `Pipe` classes
that do the relaying and can be used on any aiohttp WebSocket.

### RTSP relay

```python
import asyncio

from mediaservices.rtsp.server import Server
from mediaservices.rtsp.session import default_server_config


async def main() -> None:
    server = Server(default_server_config())
    try:
        await server.serve_and_wait()
    finally:
        await server.close()


asyncio.run(main())
```

The server listens on `0.0.0.0:8554` (TLS when `tls_context` is set) and
answers `OPTIONS`, `DESCRIBE`, `ANNOUNCE`, `SETUP`, `PLAY`, `RECORD` and
`TEARDOWN`. A publisher sends `ANNOUNCE` with its SDP, then `SETUP` and
`RECORD`, and streams `$`-framed interleaved packets; readers `DESCRIBE`,
`SETUP` and `PLAY`, and receive those packets on the same connection. A new
`ANNOUNCE` on a busy path replaces the previous stream. By default it allows
100 clients and 10 streams (`503` beyond that), can be limited to localhost
connections with `allow_local_only`, and drops publishers and readers after 60
seconds without traffic. If the port cannot be bound it retries up to 30
times, starting after 3 seconds and growing the delay by half each time up to
30 seconds. Every 30 seconds it prints its metrics.

The hooks `on_conn_open`, `on_session_open`, `on_announce`, `on_setup`,
`on_play`, `on_record`, `on_describe`, `on_session_close` and `on_conn_close`
can also be called directly, and `get_stream_info(path)` and
`get_all_streams()` show the current streams.

## What the package does not do

- No authentication: `internal_auth_middleware` passes every request through,
  and `auth_middleware` only records the required scopes, roles and rooms on
  the request without checking them. `internal_api_key` and the scope and role
  settings are not enforced.
- The RTSP server supports TCP-interleaved transport only; a `SETUP` asking
  for anything else gets `461 Unsupported Transport`. The UDP and multicast
  settings in its `ServerConfig` are not used, and neither are its
  `read_timeout`, `write_timeout` and `write_queue_size`.
- There is no command for the RTSP server; start it from code as shown above.