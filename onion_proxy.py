"""
onion_proxy.py — Plain-HTTP front door for a single onion service.

Architecture
------------
A ``GatewayServer`` binds a local TCP port that ordinary HTTP clients talk
to.  Every request except the health path is rewritten to a fixed onion
upstream and sent through Tor's SOCKS5 port, with the onion hostname
resolved at the far end of the tunnel (the ``socks5h`` behaviour).

Key components:

* **GatewayServer** — owns the ``asyncio.Server`` and connection tracking;
  routes each request to the health endpoint or the forwarder.
* **Http1Handler / Http2Handler** — client-side protocol handling.  HTTP/2
  is only spoken as h2c with prior knowledge (no TLS on the listener).
* **ForwardingProxy** — opens the tunnel, sends the rewritten request and
  turns *any* failure before the upstream headers arrive into a 502 page.
* **ProxyHooks** — the three interception points (request, response,
  error) called in a fixed order by the forwarder.
* **Socks5Client** — minimal async SOCKS5 CONNECT client (no-auth).
* **HealthEndpoint** — local liveness probe; never touches the upstream.

Threading model
~~~~~~~~~~~~~~~
Everything runs on one asyncio event loop.  Requests are independent; the
only shared state is the immutable ``ProxyConfig``.
"""

from __future__ import annotations

import asyncio
import html
import ipaddress
import json
import logging
import ssl
import struct
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlsplit

import h2.config
import h2.connection
import h2.events
import h2.exceptions
from asyncio import StreamReader, StreamWriter


# ============================================================================
# Configuration
# ============================================================================


DEFAULT_ONION_URL = "http://3g2upl4pq6kufc4m.onion"
H2_PREFACE = b"PRI * HTTP/2.0\r\n\r\nSM\r\n\r\n"

# Header bytes pass through unchanged; every wire path decodes and encodes
# header text with this codec.
HEADER_CODEC = "latin-1"


class ConfigurationError(ValueError):
    """Raised at startup for any malformed configuration value."""


@dataclass(frozen=True)
class ProxyTarget:
    """The fixed upstream base address (scheme + host [+ port], no path)."""

    url: str
    scheme: str
    host: str
    port: int

    @classmethod
    def parse(cls, raw: str) -> ProxyTarget:
        """Validate *raw* as an absolute ``http``/``https`` base URL.

        Raises
        ------
        ConfigurationError
            Empty value, unsupported scheme, missing host, credentials,
            a path other than ``/``, a query, a fragment, or a bad port.
        """
        value = (raw or "").strip()
        if not value:
            raise ConfigurationError("Upstream target must not be empty")
        try:
            parts = urlsplit(value)
            port = parts.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid upstream target {value!r}: {e}") from e

        scheme = parts.scheme.lower()
        if scheme not in ("http", "https"):
            raise ConfigurationError(
                f"Invalid upstream target {value!r}: scheme must be http or https"
            )
        if not parts.hostname:
            raise ConfigurationError(f"Invalid upstream target {value!r}: missing host")
        if parts.username is not None or parts.password is not None:
            raise ConfigurationError(
                f"Invalid upstream target {value!r}: credentials are not supported"
            )
        if parts.path not in ("", "/") or parts.query or parts.fragment:
            raise ConfigurationError(
                f"Invalid upstream target {value!r}: only scheme and host are allowed"
            )

        if port == 0:
            raise ConfigurationError(f"Invalid upstream target {value!r}: port 0")

        host = parts.hostname.lower()
        default_port = 443 if scheme == "https" else 80
        port = default_port if port is None else port
        netloc = f"[{host}]" if ":" in host else host
        if port != default_port:
            netloc = f"{netloc}:{port}"
        return cls(url=f"{scheme}://{netloc}", scheme=scheme, host=host, port=port)

    @property
    def host_header(self) -> str:
        """Value for the upstream ``Host`` header."""
        return self.url.split("://", 1)[1]

    @property
    def is_https(self) -> bool:
        return self.scheme == "https"

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class SocksEndpoint:
    """Where the local Tor SOCKS5 listener lives."""

    host: str = "127.0.0.1"
    port: int = 9050

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ProxyConfig:
    """Tunable knobs for the gateway listener and forwarder.

    All timeouts are in seconds.  Buffer sizes are in bytes.

    Attributes
    ----------
    target:
        The single upstream every non-health request goes to.
    socks:
        Tor's SOCKS5 listener.
    health_path:
        Path answered locally by :class:`HealthEndpoint`.
    upstream_timeout:
        Deadline for tunnel setup + request write + upstream response
        headers.  Exceeding it produces a 502.
    verify_ssl:
        Verify the upstream certificate for ``https`` targets.
    idle_timeout:
        How long a keep-alive client connection may sit idle.
    request_timeout:
        Maximum time for reading one client request (headers + body).
    max_streams_per_connection:
        h2c concurrent stream cap; extra streams get REFUSED_STREAM (0x7).
    read_buffer_size:
        Size passed to ``reader.read()`` when streaming bodies.
    marker:
        Header added to every successfully proxied response.
    """

    target: ProxyTarget = field(
        default_factory=lambda: ProxyTarget.parse(DEFAULT_ONION_URL)
    )
    socks: SocksEndpoint = field(default_factory=SocksEndpoint)
    health_path: str = "/health"

    upstream_timeout: float = 30.0
    verify_ssl: bool = True
    idle_timeout: float = 70.0
    request_timeout: float = 120.0

    max_streams_per_connection: int = 100
    read_buffer_size: int = 65536

    marker: tuple[str, str] = ("X-Powered-By", "Tor2Web")


# ============================================================================
# Data Classes
# ============================================================================


@dataclass
class InboundRequest:
    """A fully-read client request, independent of the client protocol."""

    method: str
    target: str
    version: str
    headers: list[tuple[str, str]]
    body: bytes
    client_ip: str
    protocol: str = "HTTP/1.1"

    @property
    def path(self) -> str:
        """The request path without the query string."""
        return self.target.split("?", 1)[0]

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lname = name.lower()
        for k, v in self.headers:
            if k.lower() == lname:
                return v
        return default


@dataclass
class OutboundResponse:
    """A response ready to be written to the client.

    Either ``body`` holds the complete payload, or ``stream`` yields it
    piecewise from the upstream connection held in ``upstream``.
    """

    status: int
    reason: str
    headers: list[tuple[str, str]]
    body: bytes = b""
    stream: Optional[AsyncIterator[bytes]] = None
    upstream: Optional[ManagedConnection] = None

    @property
    def content_length(self) -> Optional[int]:
        """Known body length, or ``None`` when it is delimited by framing."""
        if self.stream is None:
            return len(self.body)
        for k, v in self.headers:
            if k.lower() == "content-length":
                try:
                    return int(v)
                except ValueError:
                    return None
        return None

    async def chunks(self) -> AsyncIterator[bytes]:
        if self.stream is None:
            if self.body:
                yield self.body
            return
        async for chunk in self.stream:
            yield chunk

    async def aclose(self) -> None:
        """Release the upstream connection (idempotent)."""
        stream, self.stream = self.stream, None
        if stream is not None and hasattr(stream, "aclose"):
            try:
                await stream.aclose()
            except Exception as e:
                logger.debug("Upstream stream close error: %s", e)
        if self.upstream is not None:
            upstream, self.upstream = self.upstream, None
            await upstream.close()


def _has_no_body(method: str, status: int) -> bool:
    return method == "HEAD" or status in (204, 304) or 100 <= status < 200


def _header_value(headers: list[tuple[str, str]], name: str) -> Optional[str]:
    lname = name.lower()
    for k, v in headers:
        if k.lower() == lname:
            return v
    return None


class _BadRequest(Exception):
    """Malformed client request; answered with 400 and a closed connection."""


# ============================================================================
# Connection wrapper
# ============================================================================


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Tracks last-activity time and provides a ``close()`` that never raises,
    which matters on the upstream side where Tor may already have torn the
    circuit down.
    """

    __slots__ = ("reader", "writer", "last_activity", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        self.last_activity = time.monotonic()
        self._closed = False

    def touch(self) -> None:
        """Update the last-activity timestamp (call on every successful I/O)."""
        self.last_activity = time.monotonic()

    @property
    def peer_ip(self) -> str:
        peer = self.writer.get_extra_info("peername")
        if isinstance(peer, tuple) and peer:
            return str(peer[0])
        return "unknown"

    async def close(self, force: bool = False) -> None:
        """Close the underlying transport.

        With *force* the transport is aborted without waiting for a
        graceful shutdown (used for bulk teardown and mid-body failures).
        """
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if force:
                transport.abort()
            if transport is None or transport.is_closing():
                return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            try:
                transport = self.writer.transport
                if transport and not transport.is_closing():
                    transport.abort()
            except Exception as e:
                logger.debug(e)
            logger.trace("Connection close timed out, aborted")
        except Exception as e:
            logger.debug("Connection close error: %s", e)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()


# ============================================================================
# SOCKS5 Client
# ============================================================================


SOCKS5_REPLIES = {
    0x01: "General SOCKS server failure",
    0x02: "Connection not allowed by ruleset",
    0x03: "Network unreachable",
    0x04: "Host unreachable",
    0x05: "Connection refused",
    0x06: "TTL expired",
    0x07: "Command not supported",
    0x08: "Address type not supported",
    # Tor extended errors for onion services (SocksPort ExtendedErrors)
    0xF0: "Onion service descriptor can not be found",
    0xF1: "Onion service descriptor is invalid",
    0xF2: "Onion service introduction failed",
    0xF3: "Onion service rendezvous failed",
    0xF4: "Onion service missing client authorization",
    0xF5: "Onion service wrong client authorization",
    0xF6: "Onion service invalid address",
    0xF7: "Onion service introduction timed out",
}


class SocksError(ConnectionError):
    """The SOCKS5 proxy refused the handshake or the CONNECT request."""

    def __init__(self, message: str, reply: Optional[int] = None):
        self.reply = reply
        super().__init__(message)


class Socks5Client:
    """Async SOCKS5 CONNECT client (no-auth method only)."""

    @staticmethod
    async def connect(
        proxy: SocksEndpoint, target_host: str, target_port: int, timeout: float = 30.0
    ) -> tuple[StreamReader, StreamWriter]:
        """Open a SOCKS5 tunnel to ``target_host:target_port`` via *proxy*.

        Hostnames are sent with the domain-name address type (0x03) so that
        resolution happens inside Tor; ``.onion`` names cannot be resolved
        locally.  Literal IP addresses use the matching address type.
        """
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(proxy.host, proxy.port), timeout=timeout
        )

        try:
            async with asyncio.timeout(timeout):
                # Greeting: version 5, 1 method (no-auth)
                writer.write(b"\x05\x01\x00")
                await writer.drain()

                resp = await reader.readexactly(2)
                if resp[0] != 0x05:
                    raise SocksError("SOCKS5: Invalid handshake response")
                if resp[1] == 0xFF:
                    raise SocksError("SOCKS5: No acceptable authentication method")

                writer.write(
                    b"\x05\x01\x00"
                    + Socks5Client._encode_address(target_host)
                    + struct.pack(">H", target_port)
                )
                await writer.drain()

                resp = await reader.readexactly(4)
                if resp[1] != 0x00:
                    raise SocksError(
                        f"SOCKS5: {SOCKS5_REPLIES.get(resp[1], 'Unknown error')} "
                        f"(0x{resp[1]:02x})",
                        reply=resp[1],
                    )

                # Drain the bound address so the socket is ready for data
                atyp = resp[3]
                if atyp == 0x01:  # IPv4 + port
                    await reader.readexactly(6)
                elif atyp == 0x03:  # Domain + port
                    length = (await reader.readexactly(1))[0]
                    await reader.readexactly(length + 2)
                elif atyp == 0x04:  # IPv6 + port
                    await reader.readexactly(18)

            return reader, writer
        except asyncio.IncompleteReadError as e:
            writer.close()
            raise SocksError("SOCKS5: Proxy closed the connection during handshake") from e
        except BaseException:
            writer.close()
            raise

    @staticmethod
    def _encode_address(host: str) -> bytes:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            domain = host.encode("idna")
            if len(domain) > 255:
                raise SocksError(f"SOCKS5: Hostname too long: {host}")
            return b"\x03" + bytes([len(domain)]) + domain
        if ip.version == 4:
            return b"\x01" + ip.packed
        return b"\x04" + ip.packed


# ============================================================================
# Proxy hooks
# ============================================================================


HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

ERROR_PAGE = """
      <html>
        <head><title>502 Bad Gateway</title></head>
        <body>
          <h1>502 Bad Gateway</h1>
          <p>Cannot reach onion service: {target}</p>
          <p>Error: {error}</p>
        </body>
      </html>
"""


def _connection_tokens(headers: list[tuple[str, str]]) -> set[str]:
    """Header names listed in ``Connection`` are hop-by-hop as well."""
    tokens: set[str] = set()
    for k, v in headers:
        if k.lower() == "connection":
            tokens.update(t.strip().lower() for t in v.split(",") if t.strip())
    return tokens


def describe_error(exc: BaseException, timeout: float) -> str:
    """The user-facing text for a forwarding failure."""
    if isinstance(exc, TimeoutError):
        return f"Upstream request timed out after {timeout:g}s"
    return str(exc) or type(exc).__name__


class ProxyHooks:
    """Interception points of the forwarding pipeline.

    ``ForwardingProxy`` calls them synchronously in this order:

    1. :meth:`on_request` — build the upstream header list.
    2. :meth:`on_response` — adjust upstream response headers.
    3. :meth:`on_error` — render the 502 page (only on failure).

    Subclass to change the behaviour; the forwarder never dispatches
    through anything else.
    """

    def __init__(self, config: ProxyConfig):
        self.config = config

    def on_request(self, request: InboundRequest) -> list[tuple[str, str]]:
        """Rewrite client headers for the upstream.

        ``Host`` points at the onion target, the client address goes into
        ``X-Forwarded-For`` / ``X-Real-IP``, and the request is framed
        with ``Content-Length`` on a ``Connection: close`` upstream.
        """
        drop = HOP_BY_HOP | _connection_tokens(request.headers) | {
            "host",
            "content-length",
            "expect",
            "x-forwarded-for",
            "x-real-ip",
        }
        headers = [(k, v) for k, v in request.headers if k.lower() not in drop]
        headers.insert(0, ("Host", self.config.target.host_header))
        headers.append(("X-Forwarded-For", request.client_ip))
        headers.append(("X-Real-IP", request.client_ip))
        if request.body or request.method in ("POST", "PUT", "PATCH"):
            headers.append(("Content-Length", str(len(request.body))))
        headers.append(("Connection", "close"))
        return headers

    def on_response(
        self, status: int, headers: list[tuple[str, str]]
    ) -> list[tuple[str, str]]:
        """Strip hop-by-hop headers and stamp the proxy marker."""
        marker_name, marker_value = self.config.marker
        drop = HOP_BY_HOP | _connection_tokens(headers) | {marker_name.lower()}
        if _header_value(headers, "transfer-encoding") is not None:
            # Chunked framing wins over a conflicting length
            drop = drop | {"content-length"}
        out = [(k, v) for k, v in headers if k.lower() not in drop]
        out.append((marker_name, marker_value))
        return out

    def on_error(self, exc: BaseException, request: InboundRequest) -> OutboundResponse:
        """Render the deterministic 502 page for a failed request."""
        message = describe_error(exc, self.config.upstream_timeout)
        body = ERROR_PAGE.format(
            target=html.escape(self.config.target.url),
            error=html.escape(message),
        ).encode("utf-8")
        return OutboundResponse(
            status=502,
            reason="Bad Gateway",
            headers=[("Content-Type", "text/html; charset=utf-8")],
            body=body,
        )


# ============================================================================
# Forwarding proxy
# ============================================================================


class ForwardingProxy:
    """Sends each request to the fixed onion target through Tor.

    Any failure up to and including the upstream response headers is
    contained to the request and answered with a 502 page.  There are no
    retries.
    """

    __slots__ = ("config", "hooks")

    def __init__(self, config: ProxyConfig, hooks: Optional[ProxyHooks] = None):
        self.config = config
        self.hooks = hooks or ProxyHooks(config)

    async def handle(self, request: InboundRequest) -> OutboundResponse:
        try:
            return await self._forward(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Proxy error: %s", describe_error(e, self.config.upstream_timeout)
            )
            logger.debug("Proxy error detail:\n%s", traceback.format_exc())
            return self.hooks.on_error(e, request)

    # -- internal ----------------------------------------------------------

    async def _forward(self, request: InboundRequest) -> OutboundResponse:
        headers = self.hooks.on_request(request)
        upstream: Optional[ManagedConnection] = None
        try:
            async with asyncio.timeout(self.config.upstream_timeout):
                upstream = await self._open_tunnel()
                await self._send_request(upstream, request, headers)
                status, reason, raw_headers = await self._read_response_head(upstream)
            stream = self._body_stream(upstream, request.method, status, raw_headers)
        except BaseException:
            if upstream is not None:
                await upstream.close(force=True)
            raise

        if stream is None:
            await upstream.close()
            upstream = None

        return OutboundResponse(
            status=status,
            reason=reason,
            headers=self.hooks.on_response(status, raw_headers),
            stream=stream if stream is not None else _empty_stream(),
            upstream=upstream,
        )

    async def _open_tunnel(self) -> ManagedConnection:
        target = self.config.target
        reader, writer = await Socks5Client.connect(
            self.config.socks, target.host, target.port, self.config.upstream_timeout
        )
        if target.is_https:
            ctx = ssl.create_default_context()
            if not self.config.verify_ssl:
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
            try:
                await writer.start_tls(ctx, server_hostname=target.host)
            except BaseException:
                writer.close()
                raise
        return ManagedConnection(reader, writer)

    async def _send_request(
        self,
        conn: ManagedConnection,
        request: InboundRequest,
        headers: list[tuple[str, str]],
    ) -> None:
        """Serialise and send an HTTP/1.1 request."""
        conn.writer.write(f"{request.method} {request.target} HTTP/1.1\r\n".encode(HEADER_CODEC))
        for n, v in headers:
            conn.writer.write(f"{n}: {v}\r\n".encode(HEADER_CODEC))
        conn.writer.write(b"\r\n")
        if request.body:
            conn.writer.write(request.body)
        await conn.writer.drain()
        conn.touch()

    async def _read_response_head(
        self, conn: ManagedConnection
    ) -> tuple[int, str, list[tuple[str, str]]]:
        """Read the final status line and headers, skipping 1xx responses."""
        while True:
            line = await conn.reader.readline()
            if not line:
                raise ConnectionError("Upstream closed the connection without a response")
            parts = line.decode(HEADER_CODEC).rstrip("\r\n").split(" ", 2)
            if len(parts) < 2 or not parts[0].startswith("HTTP/"):
                raise ConnectionError(f"Malformed upstream status line: {line[:80]!r}")
            try:
                status = int(parts[1])
            except ValueError:
                raise ConnectionError(f"Malformed upstream status line: {line[:80]!r}") from None
            reason = parts[2] if len(parts) > 2 else ""

            headers: list[tuple[str, str]] = []
            while True:
                hl = await conn.reader.readline()
                if not hl:
                    raise ConnectionError("Upstream closed the connection mid-headers")
                if hl in (b"\r\n", b"\n"):
                    break
                decoded = hl.decode(HEADER_CODEC).rstrip("\r\n")
                if ":" in decoded:
                    k, v = decoded.split(":", 1)
                    headers.append((k.strip(), v.strip()))
            conn.touch()

            if 100 <= status < 200 and status != 101:
                continue
            return status, reason, headers

    def _body_stream(
        self,
        conn: ManagedConnection,
        method: str,
        status: int,
        headers: list[tuple[str, str]],
    ) -> Optional[AsyncIterator[bytes]]:
        """Pick the body framing of the upstream response.

        Handles three body framing modes:
        1. ``Transfer-Encoding: chunked``
        2. ``Content-Length: N``
        3. **Close-delimited** — read until EOF (no length, not chunked)
        """
        if _has_no_body(method, status):
            return None
        te = _header_value(headers, "transfer-encoding")
        if te is not None and "chunked" in te.lower():
            return _iter_chunked(conn, self.config.read_buffer_size)
        cl = _header_value(headers, "content-length")
        if cl is not None:
            try:
                length = int(cl)
            except ValueError:
                raise ConnectionError(f"Invalid upstream Content-Length: {cl!r}") from None
            if length <= 0:
                return None
            return _iter_length(conn, length, self.config.read_buffer_size)
        return _iter_until_eof(conn, self.config.read_buffer_size)


async def _empty_stream() -> AsyncIterator[bytes]:
    return
    yield b""  # pragma: no cover


async def _iter_chunked(conn: ManagedConnection, bufsize: int) -> AsyncIterator[bytes]:
    """Yield the de-chunked payload of a chunked body."""
    while True:
        size_line = await conn.reader.readline()
        if not size_line:
            raise asyncio.IncompleteReadError(b"", None)
        size = int(size_line.split(b";", 1)[0].strip(), 16)
        if size == 0:
            # Trailers, terminated by an empty line
            while True:
                trailer = await conn.reader.readline()
                if trailer in (b"\r\n", b"\n", b""):
                    break
            return
        remaining = size
        while remaining > 0:
            chunk = await conn.reader.readexactly(min(remaining, bufsize))
            remaining -= len(chunk)
            conn.touch()
            yield chunk
        await conn.reader.readline()  # chunk-terminating CRLF


async def _iter_length(
    conn: ManagedConnection, length: int, bufsize: int
) -> AsyncIterator[bytes]:
    remaining = length
    while remaining > 0:
        chunk = await conn.reader.read(min(remaining, bufsize))
        if not chunk:
            raise asyncio.IncompleteReadError(b"", remaining)
        remaining -= len(chunk)
        conn.touch()
        yield chunk


async def _iter_until_eof(conn: ManagedConnection, bufsize: int) -> AsyncIterator[bytes]:
    while True:
        chunk = await conn.reader.read(bufsize)
        if not chunk:
            return
        conn.touch()
        yield chunk


# ============================================================================
# Health endpoint
# ============================================================================


class HealthEndpoint:
    """Process-level liveness probe.

    Reports the configured target without contacting it, so the answer is
    the same whether or not Tor or the onion service is reachable.
    """

    __slots__ = ("target", "path")

    def __init__(self, target: ProxyTarget, path: str = "/health"):
        self.target = target
        self.path = path

    @staticmethod
    def _route_key(path: str) -> str:
        # Case-insensitive, one optional trailing slash
        path = path.lower()
        return path[:-1] if len(path) > 1 and path.endswith("/") else path

    def matches(self, request: InboundRequest) -> bool:
        return request.method in ("GET", "HEAD") and self._route_key(
            request.path
        ) == self._route_key(self.path)

    def respond(self, request: InboundRequest) -> OutboundResponse:
        payload = {
            "status": "ok",
            "onionUrl": self.target.url,
            "upstreamTarget": self.target.url,
            "timestamp": datetime.now(timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
        }
        body = json.dumps(payload).encode("utf-8")
        headers = [
            ("Content-Type", "application/json; charset=utf-8"),
            ("Content-Length", str(len(body))),
            ("Cache-Control", "no-store"),
        ]
        if request.method == "HEAD":
            return OutboundResponse(200, "OK", headers)
        return OutboundResponse(200, "OK", headers, body=body)


# ============================================================================
# HTTP/1.1 Handler
# ============================================================================


class Http1Handler:
    """Serves HTTP/1.x clients.

    Handles keep-alive connection reuse, chunked request bodies and
    ``Expect: 100-continue``.  Response bodies of unknown length are
    re-chunked for HTTP/1.1 clients and close-delimited for HTTP/1.0.
    """

    __slots__ = ("config", "_server")

    def __init__(self, server: GatewayServer, config: ProxyConfig):
        self._server = server
        self.config = config

    async def handle(self, client: ManagedConnection, first_line: bytes) -> None:
        """Enter the keep-alive loop, starting with an already-read request line."""
        request_count = 0
        line: Optional[bytes] = first_line

        try:
            while not client.closed:
                try:
                    request = await self._read_request(client, line)
                except _BadRequest as e:
                    logger.debug("[HTTP/1.1 %s] Bad request: %s", client.peer_ip, e)
                    await self._write_simple(client, 400, "Bad Request")
                    break
                line = None
                if request is None:
                    break

                request_count += 1
                client.touch()
                response = await self._server.dispatch(request)
                keep_alive = await self._write_response(client, request, response)
                client.touch()
                if not keep_alive:
                    break

        except asyncio.TimeoutError:
            logger.debug(
                "[HTTP/1.1 %s] Timeout after %d reqs", client.peer_ip, request_count
            )
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("[HTTP/1.1 %s] Connection closed: %s", client.peer_ip, e)
        except asyncio.IncompleteReadError as e:
            logger.warning(
                "[HTTP/1.1 %s] Upstream body truncated, aborting client: %s",
                client.peer_ip,
                e,
            )
            await client.close(force=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "[HTTP/1.1 %s] Error: %s\n%s",
                client.peer_ip,
                e,
                traceback.format_exc(),
            )
            await client.close(force=True)

    # -- internal ----------------------------------------------------------

    async def _read_request(
        self, conn: ManagedConnection, first_line: Optional[bytes]
    ) -> Optional[InboundRequest]:
        """Read a complete HTTP/1.x request (line + headers + body).

        Returns ``None`` on EOF or idle timeout; raises ``_BadRequest`` on
        malformed input.
        """
        try:
            if first_line is None:
                async with asyncio.timeout(self.config.idle_timeout):
                    first_line = await conn.reader.readline()
            if not first_line:
                return None
            request_line = first_line.decode(HEADER_CODEC).strip()
            if not request_line:
                return None
            parts = request_line.split(" ")
            if len(parts) != 3 or not parts[2].startswith("HTTP/1."):
                raise _BadRequest(f"invalid request line {request_line[:80]!r}")
            method, target, version = parts
            target = self._origin_form(target)

            async with asyncio.timeout(self.config.request_timeout):
                headers: list[tuple[str, str]] = []
                content_length = 0
                chunked = False

                while True:
                    line = await conn.reader.readline()
                    if not line:
                        return None
                    if line in (b"\r\n", b"\n"):
                        break
                    decoded = line.decode(HEADER_CODEC).rstrip("\r\n")
                    if ":" not in decoded:
                        raise _BadRequest(f"invalid header line {decoded[:80]!r}")
                    k, v = decoded.split(":", 1)
                    k, v = k.strip(), v.strip()
                    headers.append((k, v))
                    kl = k.lower()
                    if kl == "content-length":
                        try:
                            content_length = int(v)
                        except ValueError:
                            raise _BadRequest(f"invalid Content-Length {v!r}")
                        if content_length < 0:
                            raise _BadRequest(f"invalid Content-Length {v!r}")
                    elif kl == "transfer-encoding" and "chunked" in v.lower():
                        chunked = True

                expect = _header_value(headers, "expect")
                if (
                    expect is not None
                    and expect.lower() == "100-continue"
                    and version == "HTTP/1.1"
                    and (chunked or content_length > 0)
                ):
                    conn.writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
                    await conn.writer.drain()

                body = b""
                if chunked:
                    body = await self._read_chunked(conn.reader)
                elif content_length > 0:
                    body = await conn.reader.readexactly(content_length)

        except asyncio.TimeoutError:
            return None
        except asyncio.IncompleteReadError:
            return None
        except ValueError as e:
            # Line over the StreamReader limit or a bad chunk size
            raise _BadRequest(str(e)) from e

        return InboundRequest(
            method=method,
            target=target,
            version=version,
            headers=headers,
            body=body,
            client_ip=conn.peer_ip,
            protocol=version,
        )

    @staticmethod
    def _origin_form(target: str) -> str:
        """Reduce an absolute-form request target to path + query."""
        if target.startswith("/") or target == "*":
            return target
        if "://" in target:
            parts = urlsplit(target)
            path = parts.path or "/"
            return f"{path}?{parts.query}" if parts.query else path
        raise _BadRequest(f"invalid request target {target[:80]!r}")

    async def _read_chunked(self, reader: StreamReader) -> bytes:
        """Read a chunked-encoded body, returning the reassembled bytes."""
        body = bytearray()
        while True:
            size_line = await reader.readline()
            size = int(size_line.split(b";", 1)[0].strip(), 16)
            if size == 0:
                while (await reader.readline()) not in (b"\r\n", b"\n", b""):
                    pass
                break
            body.extend(await reader.readexactly(size))
            await reader.readline()  # chunk-terminating CRLF
        return bytes(body)

    async def _write_response(
        self,
        client: ManagedConnection,
        request: InboundRequest,
        response: OutboundResponse,
    ) -> bool:
        """Write *response* and return whether the connection stays open."""
        try:
            keep_alive = self._client_keep_alive(request)
            no_body = _has_no_body(request.method, response.status)
            length = response.content_length
            chunked = False

            headers = [
                (k, v)
                for k, v in response.headers
                if k.lower() not in ("connection", "transfer-encoding")
            ]
            if not no_body:
                if length is not None:
                    if _header_value(headers, "content-length") is None:
                        headers.append(("Content-Length", str(length)))
                elif request.version == "HTTP/1.1":
                    chunked = True
                    headers.append(("Transfer-Encoding", "chunked"))
                else:
                    keep_alive = False
            headers.append(("Connection", "keep-alive" if keep_alive else "close"))

            w = client.writer
            w.write(f"HTTP/1.1 {response.status} {response.reason}\r\n".encode(HEADER_CODEC))
            for n, v in headers:
                w.write(f"{n}: {v}\r\n".encode(HEADER_CODEC))
            w.write(b"\r\n")

            if not no_body:
                async for chunk in response.chunks():
                    if not chunk:
                        continue
                    if chunked:
                        w.write(f"{len(chunk):x}\r\n".encode())
                        w.write(chunk)
                        w.write(b"\r\n")
                    else:
                        w.write(chunk)
                    await w.drain()
                if chunked:
                    w.write(b"0\r\n\r\n")
            await w.drain()
            return keep_alive
        finally:
            await response.aclose()

    @staticmethod
    def _client_keep_alive(request: InboundRequest) -> bool:
        conn = (request.header("connection") or "").lower()
        if request.version == "HTTP/1.1":
            return "close" not in conn
        return "keep-alive" in conn

    @staticmethod
    async def _write_simple(client: ManagedConnection, status: int, reason: str) -> None:
        """Best-effort bodyless error response."""
        try:
            if not client.closed:
                client.writer.write(
                    f"HTTP/1.1 {status} {reason}\r\n"
                    "Content-Length: 0\r\nConnection: close\r\n\r\n".encode()
                )
                await client.writer.drain()
        except (ConnectionError, RuntimeError) as e:
            logger.debug("Could not send %d: %s", status, e)


# ============================================================================
# HTTP/2 Handler (h2c, prior knowledge)
# ============================================================================


@dataclass
class _H2Stream:
    stream_id: int
    headers: list[tuple[str, str]]
    body: bytearray = field(default_factory=bytearray)
    window: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class Http2Handler:
    """Serves clients that open the connection with the HTTP/2 preface.

    Each completed stream is turned into an ``InboundRequest`` and
    dispatched in its own task, so slow upstream responses do not block
    other streams on the same connection.
    """

    __slots__ = ("config", "_server")

    # Connection-specific headers are illegal in HTTP/2
    _FORBIDDEN = HOP_BY_HOP | {"host"}

    def __init__(self, server: GatewayServer, config: ProxyConfig):
        self._server = server
        self.config = config

    async def handle(self, client: ManagedConnection, preface: bytes) -> None:
        conn = h2.connection.H2Connection(
            config=h2.config.H2Configuration(
                client_side=False, header_encoding=HEADER_CODEC
            )
        )
        conn.initiate_connection()
        streams: dict[int, _H2Stream] = {}
        logger.debug("[HTTP/2 %s] Session started", client.peer_ip)

        try:
            data: bytes = preface
            while True:
                try:
                    events = conn.receive_data(data)
                except h2.exceptions.ProtocolError as e:
                    logger.warning("H2 protocol error (client %s): %s", client.peer_ip, e)
                    break

                terminated = False
                for event in events:
                    terminated |= self._process_event(event, conn, client, streams)
                await self._flush(conn, client)
                if terminated:
                    break

                # Idle only counts while no stream is in flight
                idle = None if streams else self.config.idle_timeout
                try:
                    async with asyncio.timeout(idle):
                        data = await client.reader.read(self.config.read_buffer_size)
                except asyncio.TimeoutError:
                    conn.close_connection()
                    await self._flush(conn, client)
                    break
                if not data:
                    break
                client.touch()

        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("[HTTP/2 %s] Connection closed: %s", client.peer_ip, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "[HTTP/2 %s] Error: %s\n%s", client.peer_ip, e, traceback.format_exc()
            )
        finally:
            tasks = [s.task for s in streams.values() if s.task and not s.task.done()]
            for t in tasks:
                t.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            streams.clear()
            logger.debug("[HTTP/2 %s] Session stopped", client.peer_ip)

    # -- internal ----------------------------------------------------------

    def _process_event(
        self,
        event: h2.events.Event,
        conn: h2.connection.H2Connection,
        client: ManagedConnection,
        streams: dict[int, _H2Stream],
    ) -> bool:
        """Handle one h2 event.  Returns ``True`` when the peer sent GOAWAY."""
        if isinstance(event, h2.events.RequestReceived):
            if len(streams) >= self.config.max_streams_per_connection:
                conn.reset_stream(event.stream_id, error_code=7)
                return False
            streams[event.stream_id] = _H2Stream(
                stream_id=event.stream_id, headers=list(event.headers)
            )

        elif isinstance(event, h2.events.DataReceived):
            stream = streams.get(event.stream_id)
            conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
            if stream:
                stream.body.extend(event.data)

        elif isinstance(event, h2.events.StreamEnded):
            stream = streams.get(event.stream_id)
            if stream and stream.task is None:
                stream.task = asyncio.create_task(
                    self._respond(conn, client, stream, streams),
                    name=f"h2-stream-{event.stream_id}",
                )

        elif isinstance(event, h2.events.StreamReset):
            stream = streams.pop(event.stream_id, None)
            if stream and stream.task and not stream.task.done():
                stream.task.cancel()

        elif isinstance(event, h2.events.WindowUpdated):
            if event.stream_id == 0:
                for s in streams.values():
                    s.window.set()
            elif event.stream_id in streams:
                streams[event.stream_id].window.set()

        elif isinstance(event, h2.events.ConnectionTerminated):
            logger.debug(
                "[GOAWAY] Client %s sent GOAWAY (error=%s)",
                client.peer_ip,
                event.error_code,
            )
            return True

        return False

    async def _respond(
        self,
        conn: h2.connection.H2Connection,
        client: ManagedConnection,
        stream: _H2Stream,
        streams: dict[int, _H2Stream],
    ) -> None:
        sid = stream.stream_id
        response: Optional[OutboundResponse] = None
        try:
            request = self._to_request(stream, client.peer_ip)
            response = await self._server.dispatch(request)

            headers = [(b":status", str(response.status).encode())]
            headers.extend(
                (k.lower().encode(HEADER_CODEC), v.encode(HEADER_CODEC))
                for k, v in response.headers
                if k.lower() not in self._FORBIDDEN
            )
            if _has_no_body(request.method, response.status):
                conn.send_headers(sid, headers, end_stream=True)
                await self._flush(conn, client)
                return

            conn.send_headers(sid, headers)
            await self._flush(conn, client)
            async for chunk in response.chunks():
                await self._send_data(conn, client, stream, chunk)
            conn.end_stream(sid)
            await self._flush(conn, client)

        except asyncio.CancelledError:
            raise
        except h2.exceptions.StreamClosedError:
            logger.debug("[HTTP/2 %s] Stream %d closed by peer", client.peer_ip, sid)
        except Exception as e:
            logger.warning("[HTTP/2 %s] Stream %d failed: %s", client.peer_ip, sid, e)
            try:
                conn.reset_stream(sid, error_code=2)
                await self._flush(conn, client)
            except (h2.exceptions.ProtocolError, ConnectionError):
                pass
        finally:
            streams.pop(sid, None)
            if response is not None:
                await response.aclose()

    def _to_request(self, stream: _H2Stream, client_ip: str) -> InboundRequest:
        pseudo = {k: v for k, v in stream.headers if k.startswith(":")}
        headers = [
            (k, v)
            for k, v in stream.headers
            if not k.startswith(":") and k != "cookie"
        ]
        # HTTP/2 may split cookies into several fields; HTTP/1.1 wants one
        cookies = [v for k, v in stream.headers if k == "cookie"]
        if cookies:
            headers.append(("cookie", "; ".join(cookies)))
        if ":authority" in pseudo:
            headers.insert(0, ("host", pseudo[":authority"]))
        return InboundRequest(
            method=pseudo.get(":method", "GET"),
            target=pseudo.get(":path", "/"),
            version="HTTP/2",
            headers=headers,
            body=bytes(stream.body),
            client_ip=client_ip,
            protocol="h2",
        )

    async def _send_data(
        self,
        conn: h2.connection.H2Connection,
        client: ManagedConnection,
        stream: _H2Stream,
        data: bytes,
    ) -> None:
        """Send *data* on the stream, waiting for WINDOW_UPDATE as needed."""
        sid = stream.stream_id
        view = memoryview(data)
        while view:
            while conn.local_flow_control_window(sid) < 1:
                stream.window.clear()
                await stream.window.wait()
            size = min(
                conn.local_flow_control_window(sid),
                conn.max_outbound_frame_size,
                len(view),
            )
            conn.send_data(sid, bytes(view[:size]))
            view = view[size:]
            await self._flush(conn, client)

    @staticmethod
    async def _flush(conn: h2.connection.H2Connection, client: ManagedConnection) -> None:
        data = conn.data_to_send()
        if data and not client.closed:
            client.writer.write(data)
            await client.writer.drain()


# ============================================================================
# GatewayServer
# ============================================================================


class GatewayServer:
    """The HTTP listener: health endpoint plus catch-all forwarding.

    Usage::

        server = GatewayServer(ProxyConfig(target=ProxyTarget.parse(url)))
        port = await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        config: ProxyConfig,
        host: str = "0.0.0.0",
        port: int = 3000,
        hooks: Optional[ProxyHooks] = None,
    ):
        self.host = host
        self.port = port
        self.config = config
        self.health = HealthEndpoint(config.target, config.health_path)
        self.forwarder = ForwardingProxy(config, hooks)

        self._http1 = Http1Handler(self, config)
        self._http2 = Http2Handler(self, config)
        self._server: Optional[asyncio.Server] = None
        self._active_connections: set[ManagedConnection] = set()

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Start listening.  Returns the bound port number."""
        self._server = await asyncio.start_server(
            self._handle_client,
            self.host,
            self.port,
            reuse_address=True,
        )
        sock = self._server.sockets[0]
        self.port = sock.getsockname()[1]
        logger.info(
            "Gateway listening on %s:%d (socks: %s)",
            self.host,
            self.port,
            self.config.socks.address,
        )
        return self.port

    async def stop(self) -> None:
        """Stop accepting new connections and close all active ones."""
        if self._server:
            if self._server.is_serving():
                self._server.close()
            self._server = None
        await self.close_all_connections()
        logger.info("Gateway stopped (was :%d)", self.port)

    async def close_all_connections(self) -> None:
        connections = list(self._active_connections)
        self._active_connections.clear()
        if connections:
            logger.info("Force-closing %d active connection(s)", len(connections))
            await asyncio.gather(
                *(conn.close(force=True) for conn in connections),
                return_exceptions=True,
            )

    # -- routing -----------------------------------------------------------

    async def dispatch(self, request: InboundRequest) -> OutboundResponse:
        """Route one request.  Never raises for forwarding failures."""
        logger.trace(
            "[REQ] %s %s from %s (%s)",
            request.method,
            request.target,
            request.client_ip,
            request.protocol,
        )
        if self.health.matches(request):
            return self.health.respond(request)
        return await self.forwarder.handle(request)

    # -- connections -------------------------------------------------------

    async def _handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        """Entry point for each new client connection (called by ``asyncio.Server``)."""
        client = ManagedConnection(reader, writer)
        self._active_connections.add(client)

        try:
            async with asyncio.timeout(self.config.idle_timeout):
                first_line = await reader.readline()
            if not first_line:
                return

            if first_line == H2_PREFACE[:16]:
                rest = await asyncio.wait_for(
                    reader.readexactly(len(H2_PREFACE) - 16),
                    timeout=self.config.request_timeout,
                )
                if first_line + rest != H2_PREFACE:
                    await Http1Handler._write_simple(client, 400, "Bad Request")
                    return
                await self._http2.handle(client, first_line + rest)
            else:
                await self._http1.handle(client, first_line)

        except (asyncio.TimeoutError, asyncio.IncompleteReadError):
            pass
        except ValueError as e:
            logger.debug("Client handler error: %s", e)
            await Http1Handler._write_simple(client, 400, "Bad Request")
        except (ConnectionResetError, BrokenPipeError):
            pass
        except Exception:
            logger.debug("Client handler error: %s", traceback.format_exc())
        finally:
            self._active_connections.discard(client)
            await client.close()


# ============================================================================
# Logging
# ============================================================================


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(5):
            self._log(5, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(5, "TRACE")


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        colors = {
            5: "\033[0;37m",
            logging.DEBUG: "\033[0m",
            logging.INFO: "\033[34m",
            logging.WARNING: "\033[1;33m",
            logging.ERROR: "\033[1;31m",
            logging.CRITICAL: "\033[1;37;41m",
        }
        c = colors.get(record.levelno, "\033[0m")
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        record.msg = f"{c}{record.msg}\033[0m"
        record.levelname = f"{c}{record.levelname:<8}\033[0m"
        return super().format(record)


def configure_logging(level: str = "INFO") -> None:
    """Install the coloured console handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(
        ColoredFormatter(
            "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"
        )
    )
    root.handlers = [handler]


logger: CustomLogger = logging.getLogger(__name__)  # type: ignore[assignment]
