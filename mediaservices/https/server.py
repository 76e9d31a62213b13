"""HTTP server with routing, rate limiting, CORS and logging middleware."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import ssl
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from aiohttp import web
from cachetools import TTLCache

from .config import Config
from .metrics import BufferedErrors, Health, ServerState, is_loopback, split_host_port

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

logger = logging.getLogger(__name__)

_SAFE_HEADERS = frozenset({"accept", "accept-language", "content-language", "content-type"})
_RETRY_DELAY = 5.0


def http_error(status: int, message: str) -> web.Response:
    """Plain-text error response."""
    return web.Response(
        status=status,
        text=message + "\n",
        content_type="text/plain",
        charset="utf-8",
        headers={"X-Content-Type-Options": "nosniff"},
    )


def _format_float(value: float) -> str:
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class TokenBucket:
    """Token bucket refilled at ``rate`` tokens per second up to ``burst``."""

    def __init__(self, rate: float, burst: int) -> None:
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def _tokens_at(self, now: float) -> float:
        elapsed = max(0.0, now - self._last)
        return min(float(self.burst), self._tokens + elapsed * self.rate)

    def tokens_at(self, now: float) -> float:
        """Tokens available at monotonic time ``now``."""
        with self._lock:
            return self._tokens_at(now)

    def allow(self) -> bool:
        with self._lock:
            now = time.monotonic()
            tokens = self._tokens_at(now)
            self._last = now
            if tokens >= 1:
                self._tokens = tokens - 1
                return True
            self._tokens = tokens
            return False


@dataclass
class _Route:
    method: Optional[str]
    regex: re.Pattern
    prefix: bool
    length: int
    handler: Handler


def _compile(pattern: str, handler: Handler) -> _Route:
    method: Optional[str] = None
    path = pattern.strip()
    if not path.startswith("/"):
        method, _, path = path.partition(" ")
        path = path.strip()
    if not path.startswith("/"):
        raise ValueError(f"invalid route pattern: {pattern!r}")
    prefix = path.endswith("/")
    parts = []
    for seg in path[1:].split("/"):
        if seg == "{$}":
            parts.append("")
            prefix = False
            continue
        match = re.fullmatch(r"\{(\w+)(\.\.\.)?\}", seg)
        if match:
            body = ".*" if match.group(2) else "[^/]+"
            parts.append(f"(?P<{match.group(1)}>{body})")
        else:
            parts.append(re.escape(seg))
    regex = "/" + "/".join(parts)
    if prefix:
        regex += ".*"
    return _Route(method, re.compile(regex), prefix, len(path), handler)


class Server:
    """HTTP server exposing ``GET /internal/status`` plus registered handlers."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.health = Health(BufferedErrors(10))
        self.rate_limiters: TTLCache = TTLCache(maxsize=10_000, ttl=3600)
        self._limiter_lock = threading.Lock()
        self._routes: list[_Route] = []
        self._closed = asyncio.Event()
        self._close_started = False
        self._task: Optional[asyncio.Task] = None
        self.add_request_handler(
            "GET /internal/status",
            self.logging_middleware(
                self.cors_middleware(
                    self.internal_auth_middleware(
                        self.rate_limit_middleware(self.status_handler, False)
                    )
                )
            ),
        )

    def add_request_handler(self, pattern: str, handler: Handler) -> None:
        """Register ``handler`` for a pattern such as ``"GET /ws/{room}"``."""
        self._routes.append(_compile(pattern, handler))

    async def dispatch(self, request: web.Request) -> web.StreamResponse:
        """Route a request to its handler, or answer 404/405."""
        path = request.path
        matched = [(r, m) for r in self._routes if (m := r.regex.fullmatch(path))]
        if not matched:
            return http_error(404, "404 page not found")
        allowed = [
            (r, m)
            for r, m in matched
            if r.method is None
            or r.method == request.method
            or (r.method == "GET" and request.method == "HEAD")
        ]
        if not allowed:
            response = http_error(405, "Method Not Allowed")
            methods = sorted({r.method for r, _ in matched if r.method})
            response.headers["Allow"] = ", ".join(methods)
            return response
        route, match = min(allowed, key=lambda rm: (rm[0].prefix, -rm[0].length))
        request["path_params"] = match.groupdict()
        return await route.handler(request)

    def append_errors(self, *args: str) -> None:
        for err in args:
            self.health.add_error(err)

    async def serve(self) -> None:
        """Start serving in the background."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def serve_and_wait(self) -> None:
        """Serve until the server is closed."""
        await self.serve()
        await self._closed.wait()
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        try:
            while not self._closed.is_set():
                self.health.set_state(ServerState.UP)
                app = web.Application()
                app.router.add_route("*", "/{tail:.*}", self.dispatch)
                runner = web.AppRunner(app)
                await runner.setup()
                ssl_context = None
                if self.config.cert_path and self.config.key_file:
                    ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
                    ssl_context.load_cert_chain(self.config.cert_path, self.config.key_file)
                site = web.TCPSite(
                    runner, self.config.addr, self.config.port, ssl_context=ssl_context
                )
                try:
                    await site.start()
                except OSError as exc:
                    await runner.cleanup()
                    self.health.set_state(ServerState.DOWN)
                    message = f"error while serving: {exc}"
                    print(message)
                    self.health.add_error(message)
                    if not self.config.keep_hosting:
                        return
                    print("failed to host server, retrying in 5 seconds...")
                    try:
                        await asyncio.wait_for(self._closed.wait(), _RETRY_DELAY)
                    except asyncio.TimeoutError:
                        pass
                    continue
                try:
                    await self._closed.wait()
                finally:
                    await runner.cleanup()
                return
        finally:
            self.health.set_state(ServerState.DOWN)

    async def close(self) -> None:
        """Stop the server; calling it again does nothing."""
        if self._close_started:
            return
        self._close_started = True
        self._closed.set()
        if self._task is not None:
            await self._task

    async def status_handler(self, request: web.Request) -> web.Response:
        try:
            body = self.health.marshal()
        except (TypeError, ValueError) as exc:
            self.health.add_error(f"Failed to marshal health status: {exc}")
            return http_error(500, "Failed to marshal health status")
        return web.Response(status=200, body=body, content_type="application/json")

    # Middleware

    def internal_auth_middleware(self, handler: Handler) -> Handler:
        async def wrapped(request: web.Request) -> web.StreamResponse:
            return await handler(request)

        return wrapped

    def auth_middleware(self, handler, required_scope, required_roles, required_rooms):
        """Attach the access requirements to the request; no check is enforced."""
        requirements = {
            "scope": list(required_scope or []),
            "roles": list(required_roles or []),
            "rooms": list(required_rooms or []),
        }

        async def wrapped(request: web.Request) -> web.StreamResponse:
            request["auth_requirements"] = requirements
            return await handler(request)

        return wrapped

    def auth_middleware_with_required_room_extraction(
        self, handler, required_scope, required_roles, extractor
    ):
        """Attach the access requirements and room extractor to the request; no check is enforced."""
        requirements = {
            "scope": list(required_scope or []),
            "roles": list(required_roles or []),
            "room_extractor": extractor,
        }

        async def wrapped(request: web.Request) -> web.StreamResponse:
            request["auth_requirements"] = requirements
            return await handler(request)

        return wrapped

    def rate_limit_middleware(self, handler: Handler, is_public: bool) -> Handler:
        async def wrapped(request: web.Request) -> web.StreamResponse:
            client_ip = self.get_client_ip(request)
            if is_public:
                limit = self.config.public_rate_limit / 60
                burst = self.config.burst_size
            else:
                limit = self.config.internal_rate_limit / 60
                burst = self.config.burst_size * 2
            with self._limiter_lock:
                limiter = self.rate_limiters.get(client_ip)
                if limiter is None:
                    limiter = TokenBucket(limit, burst)
                    self.rate_limiters[client_ip] = limiter
            limit_header = str(int(limit * 60))
            if not limiter.allow():
                response = http_error(429, "Rate limit exceeded")
                response.headers["X-RateLimit-Limit"] = limit_header
                response.headers["X-RateLimit-Remaining"] = "0"
                response.headers["X-RateLimit-Reset"] = str(int(time.time() + 60))
                return response
            remaining = _format_float(limiter.tokens_at(time.monotonic()))
            response = await handler(request)
            response.headers["X-RateLimit-Limit"] = limit_header
            response.headers["X-RateLimit-Remaining"] = remaining
            return response

        return wrapped

    def cors_middleware(self, handler: Handler) -> Handler:
        async def wrapped(request: web.Request) -> web.StreamResponse:
            origin = request.headers.get("Origin", "")
            origin_allowed = self.is_origin_allowed(origin)
            if request.method == "OPTIONS":
                rejection = self._handle_preflight(request, origin_allowed)
            else:
                rejection = self._handle_actual_request(request, origin_allowed)
            if rejection is not None:
                return rejection
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=200)
            else:
                response = await handler(request)
            self._set_cors_headers(response, origin, origin_allowed)
            return response

        return wrapped

    def logging_middleware(self, handler: Handler) -> Handler:
        async def wrapped(request: web.Request) -> web.StreamResponse:
            start = time.monotonic()
            response = await handler(request)
            duration = time.monotonic() - start
            logger.info(
                "%s %s %s %d %.6fs %s",
                request.method,
                request.path,
                self.get_client_ip(request),
                response.status,
                duration,
                request.headers.get("User-Agent", ""),
            )
            return response

        return wrapped

    # CORS helpers

    def is_origin_allowed(self, origin: str) -> bool:
        if not origin:
            return True
        origins = self.config.allowed_origins
        if (origins is None or "*" in origins) and self.config.allow_wildcard:
            return True
        for allowed in origins or []:
            if allowed == origin:
                return True
            if allowed.startswith("*."):
                domain = allowed[2:]
                if origin.endswith("." + domain) or origin == domain:
                    return True
        return False

    def _handle_preflight(self, request: web.Request, origin_allowed: bool) -> Optional[web.Response]:
        if not self.config.strict_mode:
            return None
        if not origin_allowed:
            self._log_cors_violation("origin not allowed", request)
            return http_error(403, "Origin not allowed")
        if not self.is_method_allowed(request.headers.get("Access-Control-Request-Method", "")):
            self._log_cors_violation("method not allowed", request)
            return http_error(403, "Method not allowed")
        if not self.are_headers_allowed(request.headers.get("Access-Control-Request-Headers", "")):
            self._log_cors_violation("headers not allowed", request)
            return http_error(403, "Headers not allowed")
        return None

    def _handle_actual_request(self, request: web.Request, origin_allowed: bool) -> Optional[web.Response]:
        if not self.config.strict_mode:
            return None
        if not origin_allowed:
            self._log_cors_violation("origin not allowed for actual request", request)
            return http_error(403, "Origin not allowed")
        if not self.is_method_allowed(request.method):
            self._log_cors_violation("method not allowed for actual request", request)
            return http_error(405, "Method not allowed by CORS")
        return None

    def _set_cors_headers(self, response: web.StreamResponse, origin: str, origin_allowed: bool) -> None:
        headers = response.headers
        if not origin_allowed:
            headers.add("Vary", "Origin")
            return
        if origin:
            headers["Access-Control-Allow-Origin"] = origin
        methods = self.config.allowed_methods
        headers["Access-Control-Allow-Methods"] = ", ".join(methods) if methods is not None else "*"
        allowed = self.config.allowed_headers
        headers["Access-Control-Allow-Headers"] = ", ".join(allowed) if allowed is not None else "*"
        if self.config.allow_credentials and origin:
            headers["Access-Control-Allow-Credentials"] = "true"
        headers["Access-Control-Max-Age"] = str(self.config.max_age)
        if self.config.exposed_headers:
            headers["Access-Control-Expose-Headers"] = ", ".join(self.config.exposed_headers)
        for value in ("Origin", "Access-Control-Request-Method", "Access-Control-Request-Headers"):
            headers.add("Vary", value)

    def is_method_allowed(self, method: str) -> bool:
        if not method:
            return False
        if self.config.allowed_methods is None:
            return True
        return method in self.config.allowed_methods

    def are_headers_allowed(self, requested_headers: str) -> bool:
        if not requested_headers or self.config.allowed_headers is None:
            return True
        allowed = {h.strip().lower() for h in self.config.allowed_headers}
        for header in requested_headers.split(","):
            header = header.strip().lower()
            if not header or header in _SAFE_HEADERS:
                continue
            if header not in allowed:
                return False
        return True

    def _log_cors_violation(self, reason: str, request: web.Request) -> None:
        if self.config.log_violations:
            logger.warning(
                "CORS violation: %s - Origin: %s, Method: %s, Headers: %s",
                reason,
                request.headers.get("Origin", ""),
                request.headers.get("Access-Control-Request-Method", ""),
                request.headers.get("Access-Control-Request-Headers", ""),
            )

    # Client address helpers

    def get_client_ip(self, request: web.Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP", "")
        if real_ip:
            return real_ip
        remote = request.remote or ""
        try:
            host, _ = split_host_port(remote)
        except ValueError:
            return remote
        return host

    def is_internal_ip(self, ip: str) -> bool:
        if self.config.trusted_networks is None:
            return True
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            address = None
        for network in self.config.trusted_networks:
            try:
                net = ipaddress.ip_network(network, strict=False)
            except ValueError:
                continue
            if address is not None and address.version == net.version and address in net:
                return True
        return is_loopback(ip)