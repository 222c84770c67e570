"""Response controller: one exchange, one response on the wire.

Handler code can call [`Response.set_header()`](src/xmt/http/response.py:1),
[`Response.set_status()`](src/xmt/http/response.py:1) and
[`Response.send()`](src/xmt/http/response.py:1) in any order and any number of
times. The first `send()` commits the response (status line, headers, body are
rendered to bytes); every later call is ignored.

The server waits on [`Response.wait_sent()`](src/xmt/http/response.py:1) and
writes the committed bytes, so `send()` itself never blocks and is safe to call
from an async continuation of the handler.
"""

from __future__ import annotations

import json
from email.utils import formatdate
from enum import Enum, auto
from http import HTTPStatus
from typing import Any, Mapping

import anyio

from ..logger import get_logger


logger = get_logger(__name__)

HeaderValue = Any
HeaderFields = Mapping[str, HeaderValue]

CONTENT_TYPE_ALIASES: dict[str, str] = {
    "json": "application/json; charset=utf-8",
    "html": "text/html; charset=utf-8",
    "text": "text/plain; charset=utf-8",
    "bin": "application/octet-stream",
}


class BodyKind(Enum):
    """Shape of the value given to `send()`."""
    EMPTY = auto()
    TEXT = auto()
    BINARY = auto()
    STRUCTURED = auto()


_DEFAULT_CONTENT_TYPES: dict[BodyKind, str | None] = {
    BodyKind.EMPTY: None,
    BodyKind.TEXT: "text/plain",
    BodyKind.BINARY: "application/octet-stream",
    BodyKind.STRUCTURED: "application/json",
}


def body_kind(body: Any) -> BodyKind:
    if body is None:
        return BodyKind.EMPTY
    if isinstance(body, str):
        return BodyKind.TEXT
    if isinstance(body, (bytes, bytearray, memoryview)):
        return BodyKind.BINARY
    return BodyKind.STRUCTURED


def resolve_content_type(
    literal: str | None,
    alias: str | None,
    kind: BodyKind,
) -> str | None:
    """Explicit literal first, then the alias, then whatever the body implies."""
    if literal is not None:
        return literal
    if alias is not None:
        return CONTENT_TYPE_ALIASES[alias]
    return _DEFAULT_CONTENT_TYPES[kind]


def encode_body(body: Any, kind: BodyKind) -> bytes:
    match kind:
        case BodyKind.EMPTY:
            return b""
        case BodyKind.TEXT:
            return body.encode("utf-8")
        case BodyKind.BINARY:
            return bytes(body)
        case BodyKind.STRUCTURED:
            text = json.dumps(body, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
            return text.encode("utf-8")


def status_line(status: int) -> str:
    try:
        text = HTTPStatus(status).phrase
    except ValueError:
        text = "Unknown"
    return f"HTTP/1.1 {status} {text}\r\n"


def _latin1(text: str, what: str) -> str:
    try:
        text.encode("latin-1")
    except UnicodeEncodeError as e:
        raise ValueError(f"{what} is not latin-1 encodable: {text!r}") from e
    return text


def _header_text(name: str, value: Any) -> str:
    text = str(value)
    if "\r" in text or "\n" in text:
        raise ValueError(f"invalid character in header {name!r}: {text!r}")
    return _latin1(text, f"value of header {name!r}")


class Response:
    """
    Response state for a single exchange.

    Mutators return `self` so they chain:

        res.set_status(201).set_header({"x-powered-by": "xmt"}).send({"ok": True})

    The `content-type` header accepts the aliases `json`, `html`, `text` and
    `bin`; any other value is used literally. `set-cookie` values accumulate
    over several `set_header()` calls, every other header is replaced.
    """

    def __init__(self, *, head: bool = False):
        self._head = head
        self._status: int = 200
        self._headers: dict[str, list[str]] = {}
        self._content_type: str | None = None
        self._content_alias: str | None = None
        self._finalized = False
        self._body: bytes | None = None
        self._wire: bytes | None = None
        self._sent = anyio.Event()

    # --- State ---

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def status_code(self) -> int:
        return self._status

    @property
    def headers(self) -> dict[str, list[str]]:
        """Copy of the pending (or committed) headers, lower-cased."""
        return {k: list(v) for k, v in self._headers.items()}

    @property
    def body(self) -> bytes | None:
        """Committed body bytes, `None` until `send()`."""
        return self._body

    def get_header(self, name: str) -> str | None:
        values = self._headers.get(name.lower())
        if not values:
            return None
        return values[0] if len(values) == 1 else ", ".join(values)

    # --- Mutators ---

    def set_header(self, fields: HeaderFields) -> "Response":
        if self._finalized:
            logger.debug("set_header() after send() ignored: %s", list(fields))
            return self

        # Validate everything first so a bad value leaves the state untouched.
        staged: list[tuple[str, list[str]]] = []
        for key, value in fields.items():
            name = key.lower()
            if not name or any(c in name for c in " :\r\n"):
                raise ValueError(f"invalid header name: {key!r}")
            _latin1(name, "header name")
            values = value if isinstance(value, (list, tuple)) else [value]
            staged.append((name, [_header_text(name, v) for v in values]))

        for name, values in staged:
            if name == "content-type":
                self._set_content_type(values[-1] if values else None)
            elif name == "set-cookie":
                self._headers.setdefault(name, []).extend(values)
            else:
                self._headers[name] = values
        return self

    def _set_content_type(self, value: str | None) -> None:
        if value in CONTENT_TYPE_ALIASES:
            self._content_alias, self._content_type = value, None
        else:
            self._content_alias, self._content_type = None, value

    def set_status(self, code: int) -> "Response":
        if self._finalized:
            logger.debug("set_status(%s) after send() ignored", code)
            return self
        self._status = int(code)
        return self

    def send(self, body: Any = None) -> None:
        """
        Commit the response. Only the first call has any effect.

        `str` bodies go out as UTF-8 text, `bytes`-like bodies untouched, any
        other value as JSON. Raises `TypeError`/`ValueError` when the body can
        not be JSON encoded; the response then stays uncommitted.
        """
        if self._finalized:
            logger.debug("send() after send() ignored")
            return

        kind = body_kind(body)
        payload = encode_body(body, kind)
        content_type = resolve_content_type(self._content_type, self._content_alias, kind)

        headers = self.headers
        if content_type is not None:
            headers["content-type"] = [content_type]
        headers["content-length"] = [str(len(payload))]
        headers["connection"] = ["close"]
        headers.setdefault("date", [formatdate(usegmt=True)])

        self._headers = headers
        self._body = payload
        self._wire = self._render(headers, b"" if self._head else payload)
        self._finalized = True
        self._sent.set()
        logger.debug("committed %d (%s, %d bytes)", self._status, content_type, len(payload))

    # --- Wire ---

    def _render(self, headers: dict[str, list[str]], payload: bytes) -> bytes:
        start = status_line(self._status).encode("latin-1")
        head = b"".join(
            f"{name}: {value}\r\n".encode("latin-1")
            for name, values in headers.items()
            for value in values
        )
        return start + head + b"\r\n" + payload

    def to_bytes(self) -> bytes:
        if self._wire is None:
            raise RuntimeError("Response not sent")
        return self._wire

    async def wait_sent(self) -> bytes:
        """Wait until `send()` is called, return the committed bytes."""
        await self._sent.wait()
        return self.to_bytes()
