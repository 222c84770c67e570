"""Request view and HTTP/1.1 request head parsing."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

import anyio
from anyio import TypedAttributeProvider
from anyio.abc import ByteReceiveStream, SocketAttribute


HeaderMap = dict[str, str]


class RequestError(ValueError):
    """Malformed or oversized request; `status` is what the client gets back."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class Request:
    """
    Read-only view over one incoming request.

    Client information is looked up on the live transport each time it is
    asked for, nothing is cached.
    """

    def __init__(
        self,
        method: str,
        target: str,
        version: str = "HTTP/1.1",
        headers: HeaderMap | None = None,
        body: bytes = b"",
        *,
        transport: TypedAttributeProvider | None = None,
        trust_forwarded: bool = False,
    ):
        self.method = method
        self.target = target
        self.version = version
        self.headers: HeaderMap = {k.lower(): v for k, v in (headers or {}).items()}
        self.body = body
        self._transport = transport
        self._trust_forwarded = trust_forwarded

    @property
    def path(self) -> str:
        return urlsplit(self.target).path or "/"

    @property
    def query(self) -> str:
        return urlsplit(self.target).query

    def get_header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def get_client_ip(self) -> str:
        """
        Peer address of the connection, as the transport reports it.

        IPv4 clients of a dual-stack listener show up as `::ffff:a.b.c.d`; this
        is returned as is. With `trust_forwarded`, the first `x-forwarded-for`
        entry wins over the peer address.
        """
        if self._trust_forwarded:
            forwarded = self.headers.get("x-forwarded-for", "")
            first = forwarded.split(",", 1)[0].strip()
            if first:
                return first

        if self._transport is None:
            return ""
        remote: Any = self._transport.extra(SocketAttribute.remote_address, None)
        if remote is None:
            return ""
        if isinstance(remote, tuple):
            return str(remote[0])
        return str(remote)

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.target}>"


async def read_until(
    stream: ByteReceiveStream, marker: bytes, max_bytes: int
) -> tuple[bytes, bytes]:
    """Read up to and including `marker`; also returns whatever was read past it."""
    buf = bytearray()
    while True:
        idx = buf.find(marker)
        if idx != -1:
            end = idx + len(marker)
            return bytes(buf[:end]), bytes(buf[end:])
        if len(buf) > max_bytes:
            raise RequestError("request head too large", status=431)
        try:
            chunk = await stream.receive(4096)
        except anyio.EndOfStream:
            return bytes(buf), b""
        if not chunk:
            return bytes(buf), b""
        buf.extend(chunk)


async def read_exact(stream: ByteReceiveStream, n: int, prefix: bytes = b"") -> bytes:
    buf = bytearray(prefix)
    while len(buf) < n:
        try:
            chunk = await stream.receive(n - len(buf))
        except anyio.EndOfStream:
            break
        if not chunk:
            break
        buf.extend(chunk)
    if len(buf) < n:
        raise RequestError("incomplete request body")
    return bytes(buf[:n])


def parse_head(block: bytes) -> tuple[str, str, str, HeaderMap]:
    # block contains request line + headers ending with \r\n\r\n
    head = block.decode("iso-8859-1")

    lines = head.split("\r\n")
    if not lines or not lines[0]:
        raise RequestError("missing request line")

    parts = lines[0].split(" ")
    if len(parts) != 3:
        raise RequestError(f"invalid request line: {lines[0]!r}")
    method, target, version = parts
    if not method.isalpha() or not method.isupper():
        raise RequestError(f"invalid method: {method!r}")
    if not version.startswith("HTTP/"):
        raise RequestError(f"unrecognized HTTP-version: {version!r}")

    headers: HeaderMap = {}
    for line in lines[1:]:
        if line == "":
            break
        if ":" not in line:
            raise RequestError(f"invalid header line: {line!r}")
        k, v = line.split(":", 1)
        if not k or k != k.strip():
            raise RequestError(f"invalid header name: {k!r}")
        key, value = k.lower(), v.strip()
        headers[key] = f"{headers[key]}, {value}" if key in headers else value
    return method, target, version, headers


async def read_request(
    stream: ByteReceiveStream,
    *,
    max_header_bytes: int,
    max_body_bytes: int,
) -> tuple[str, str, str, HeaderMap, bytes] | None:
    """
    Read one request off `stream`.

    Returns `None` when the peer closed before sending anything. Only
    `Content-Length` bodies are supported.
    """
    block, rest = await read_until(stream, b"\r\n\r\n", max_header_bytes)
    if not block:
        return None
    if not block.endswith(b"\r\n\r\n"):
        raise RequestError("incomplete request head")

    method, target, version, headers = parse_head(block)
    if "chunked" in headers.get("transfer-encoding", "").lower():
        raise RequestError("chunked request bodies are not supported", status=411)

    try:
        content_length = int(headers.get("content-length", "0") or "0")
    except ValueError as e:
        raise RequestError(f"invalid content-length: {headers['content-length']!r}") from e
    if content_length < 0:
        raise RequestError("invalid content-length")
    if content_length > max_body_bytes:
        raise RequestError("payload too large", status=413)

    body = b""
    if content_length:
        body = await read_exact(stream, content_length, prefix=rest)
    return method, target, version, headers, body
