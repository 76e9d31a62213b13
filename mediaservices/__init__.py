"""WebSocket relay, HTTP server with CORS and rate limiting, and an RTSP relay server."""

__version__ = "0.1.0"