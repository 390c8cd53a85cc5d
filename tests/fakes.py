"""In-process stand-ins for Tor's SOCKS port and the onion service."""

import asyncio
import socket
import struct
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_BODY = b"hello from onion"
DEFAULT_RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Type: text/plain\r\n"
    b"X-Upstream: yes\r\n"
    b"X-Powered-By: Express\r\n"
    b"Keep-Alive: timeout=5\r\n"
    b"Content-Length: " + str(len(DEFAULT_BODY)).encode() + b"\r\n"
    b"\r\n" + DEFAULT_BODY
)


def unused_port() -> int:
    """A port nothing is listening on (at the time of the call)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@dataclass
class RecordedRequest:
    method: str
    target: str
    headers: dict = field(default_factory=dict)
    body: bytes = b""


class FakeSocksUpstream:
    """A SOCKS5 server that answers the tunnelled HTTP request itself.

    ``reply`` is the SOCKS reply code sent for CONNECT (0 = success).
    ``response`` is written verbatim once the HTTP request has been read;
    with ``stall`` nothing is ever written.
    """

    def __init__(self, reply: int = 0x00, response: bytes = DEFAULT_RESPONSE, stall: bool = False):
        self.reply = reply
        self.response = response
        self.stall = stall
        self.connects: list[tuple[int, str, int]] = []
        self.requests: list[RecordedRequest] = []
        self.port: Optional[int] = None
        self._server: Optional[asyncio.Server] = None
        self._tasks: set[asyncio.Task] = set()
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> int:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self.port

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
        for w in list(self._writers):
            w.transport.abort()
        for t in list(self._tasks):
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._tasks.add(task)
        self._writers.add(writer)
        try:
            await self._serve(reader, writer)
        except (asyncio.IncompleteReadError, ConnectionError):
            # Readiness probes connect and hang up immediately
            pass
        finally:
            self._tasks.discard(task)
            self._writers.discard(writer)
            writer.close()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        version, nmethods = await reader.readexactly(2)
        await reader.readexactly(nmethods)
        writer.write(b"\x05\x00")
        await writer.drain()

        _, _, _, atyp = await reader.readexactly(4)
        if atyp == 0x03:
            length = (await reader.readexactly(1))[0]
            host = (await reader.readexactly(length)).decode()
        elif atyp == 0x01:
            host = socket.inet_ntop(socket.AF_INET, await reader.readexactly(4))
        else:
            host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
        (port,) = struct.unpack(">H", await reader.readexactly(2))
        self.connects.append((atyp, host, port))

        if self.reply != 0x00:
            writer.write(bytes([0x05, self.reply, 0x00, 0x01, 0, 0, 0, 0, 0, 0]))
            await writer.drain()
            return
        writer.write(b"\x05\x00\x00\x01" + bytes(4) + b"\x00\x00")
        await writer.drain()

        request_line = (await reader.readline()).decode("latin-1").rstrip("\r\n")
        method, target, _ = request_line.split(" ", 2)
        headers = {}
        while True:
            line = await reader.readline()
            if line in (b"\r\n", b"\n", b""):
                break
            k, v = line.decode("latin-1").split(":", 1)
            headers[k.strip().lower()] = v.strip()
        body = b""
        if "content-length" in headers:
            body = await reader.readexactly(int(headers["content-length"]))
        self.requests.append(RecordedRequest(method, target, headers, body))

        if self.stall:
            await asyncio.sleep(3600)
        writer.write(self.response)
        await writer.drain()


# ── client side ──────────────────────────────────────────────────────────


async def http_exchange(port: int, raw: bytes, timeout: float = 5.0) -> bytes:
    """Send *raw* and collect everything until the server closes."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(raw)
    await writer.drain()
    data = bytearray()
    try:
        async with asyncio.timeout(timeout):
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                data.extend(chunk)
    except ConnectionResetError:
        pass
    finally:
        writer.close()
    return bytes(data)


def dechunk(body: bytes) -> bytes:
    out = bytearray()
    while body:
        size_line, _, rest = body.partition(b"\r\n")
        size = int(size_line.split(b";")[0], 16)
        if size == 0:
            break
        out.extend(rest[:size])
        body = rest[size + 2:]
    return bytes(out)


def parse_response(data: bytes) -> tuple[int, dict, bytes]:
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    status = int(lines[0].split(" ")[1])
    headers = {}
    for line in lines[1:]:
        k, v = line.split(":", 1)
        headers[k.strip().lower()] = v.strip()
    if headers.get("transfer-encoding") == "chunked":
        body = dechunk(body)
    return status, headers, body


def build_request(
    method: str = "GET",
    path: str = "/",
    headers: Optional[dict] = None,
    body: bytes = b"",
    version: str = "HTTP/1.1",
    close: bool = True,
) -> bytes:
    lines = [f"{method} {path} {version}", "Host: localhost"]
    if close:
        lines.append("Connection: close")
    for k, v in (headers or {}).items():
        lines.append(f"{k}: {v}")
    if body:
        lines.append(f"Content-Length: {len(body)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


async def fetch(port: int, method: str = "GET", path: str = "/", **kwargs) -> tuple[int, dict, bytes]:
    return parse_response(await http_exchange(port, build_request(method, path, **kwargs)))
