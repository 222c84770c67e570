"""Connection acceptor: turns accepted sockets into exchanges.

Each accepted connection is one exchange: a fresh [`Request`](src/xmt/http/request.py:1)
and [`Response`](src/xmt/http/response.py:1) are handed to
[`HttpServer.dispatch()`](src/xmt/http/server.py:1), and whatever the response
commits is written back before the connection is closed.

A connection that has not finished sending its request head when the server
shuts down is dropped; exchanges already handed to `dispatch()` are waited
for.
"""

from __future__ import annotations

import socket
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import anyio
from anyio.abc import SocketAttribute, SocketListener, SocketStream, TaskGroup, TaskStatus

from ..logger import get_logger
from .request import Request, RequestError, read_request
from .response import Response


logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Address:
    address: str
    port: int


def _error_response(status: int, message: str, *, head: bool = False) -> Response:
    response = Response(head=head)
    response.set_status(status).set_header({"content-type": "text"}).send(message)
    return response


def _peer_name(stream: SocketStream) -> str:
    remote: Any = stream.extra(SocketAttribute.remote_address, None)
    if isinstance(remote, tuple):
        return f"{remote[0]}:{remote[1]}"
    return str(remote) if remote else "unknown"


class HttpServer:
    """
    HTTP server: the connection acceptor.

    Subclasses implement [`dispatch()`](src/xmt/http/server.py:1).

    Lifecycle:
      address = await server.listen(0, task_group=tg)
      ...
      await server.close()

    or `async with server.serving(0) as address: ...`.
    """

    def __init__(
        self,
        *,
        host: str = "::",
        dual_stack: bool = True,
        max_header_bytes: int = 64 * 1024,
        max_body_bytes: int = 1 * 1024 * 1024,
        backlog: int = 128,
        trust_forwarded: bool = False,
    ):
        self._host = host
        self._dual_stack = dual_stack
        self._max_header_bytes = max_header_bytes
        self._max_body_bytes = max_body_bytes
        self._backlog = backlog
        self._trust_forwarded = trust_forwarded

        self._listener: SocketListener | None = None
        self._address: Address | None = None
        self._accept_scope: anyio.CancelScope | None = None
        self._accept_done = anyio.Event()
        self._closing = False
        self._reading: set[anyio.CancelScope] = set()
        self._active = 0
        self._idle = anyio.Event()
        self._idle.set()

    # --- Override this ---

    async def dispatch(self, request: Request, response: Response) -> None:
        """
        Handle one exchange. Exceptions propagate to the connection handler.

        Override this method to answer requests.
        """
        raise NotImplementedError(f"{self.__class__.__name__}.dispatch/2 not implemented")

    # --- Lifecycle ---

    @property
    def listening(self) -> bool:
        return self._listener is not None

    def get_listening_address(self) -> Address:
        if self._address is None:
            raise RuntimeError("Server not listening")
        return self._address

    async def listen(self, port: int = 0, *, task_group: TaskGroup) -> Address:
        """
        Bind `port` (0 picks an ephemeral one) and start accepting in `task_group`.

        Returns the address actually bound.
        """
        if self._listener is not None:
            raise RuntimeError("Server already listening")

        sock = self._bind(port)
        listener = await SocketListener.from_socket(sock)
        local: Any = listener.extra(SocketAttribute.local_address)
        self._listener = listener
        self._address = Address(address=str(local[0]), port=int(local[1]))
        self._closing = False
        self._accept_done = anyio.Event()

        await task_group.start(self._serve_loop, listener, task_group)
        logger.info("Listening on %s port %d", self._address.address, self._address.port)
        return self._address

    async def close(self) -> None:
        """Stop accepting, then wait for in-flight exchanges to be written out."""
        if self._listener is None:
            return

        self._closing = True
        logger.info("Shutting down server gracefully...")
        if self._accept_scope is not None:
            self._accept_scope.cancel()
        await self._accept_done.wait()

        for scope in list(self._reading):
            scope.cancel()

        if self._active:
            logger.info("Waiting for %d active connections to complete...", self._active)
        await self._idle.wait()

        self._listener = None
        self._address = None
        logger.info("Server shutdown complete.")

    @asynccontextmanager
    async def serving(self, port: int = 0) -> AsyncIterator[Address]:
        async with anyio.create_task_group() as tg:
            address = await self.listen(port, task_group=tg)
            try:
                yield address
            finally:
                await self.close()

    def run(self, port: int = 8080) -> None:
        async def main() -> None:
            async with self.serving(port):
                await anyio.sleep_forever()

        try:
            logger.debug("Trying to start server...")
            anyio.run(main)
        except KeyboardInterrupt:
            logger.info("Server shutdown initiated....")
        finally:
            logger.info("Server stopped cleanly....Goodbye!")

    # --- Internals ---

    def _bind(self, port: int) -> socket.socket:
        try:
            return self._bind_socket(self._host, port)
        except OSError:
            if self._host != "::":
                raise
            logger.warning("IPv6 unavailable, falling back to 0.0.0.0")
            return self._bind_socket("0.0.0.0", port)

    def _bind_socket(self, host: str, port: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            if sys.platform != "win32":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0 if self._dual_stack else 1)
            sock.bind((host, port))
            sock.listen(self._backlog)
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return sock

    async def _serve_loop(
        self,
        listener: SocketListener,
        task_group: TaskGroup,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        try:
            with anyio.CancelScope() as scope:
                self._accept_scope = scope
                task_status.started()
                async with listener:
                    await listener.serve(self._handle_client, task_group=task_group)
        finally:
            self._accept_scope = None
            self._accept_done.set()

    async def _handle_client(self, stream: SocketStream) -> None:
        self._active += 1
        if self._idle.is_set():
            self._idle = anyio.Event()
        try:
            async with stream:
                await self._exchange(stream)
        finally:
            self._active -= 1
            if self._active == 0:
                self._idle.set()

    async def _exchange(self, stream: SocketStream) -> None:
        client_id = _peer_name(stream)
        logger.debug("New connection from %s", client_id)

        with anyio.CancelScope() as scope:
            if self._closing:
                scope.cancel()
            self._reading.add(scope)
            try:
                parsed = await read_request(
                    stream,
                    max_header_bytes=self._max_header_bytes,
                    max_body_bytes=self._max_body_bytes,
                )
            except RequestError as e:
                logger.warning("Bad request from %s: %s", client_id, e)
                await self._write(stream, _error_response(e.status, f"bad request: {e}").to_bytes())
                return
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                logger.debug("Connection from %s dropped while reading", client_id)
                return
            finally:
                self._reading.discard(scope)

        if scope.cancelled_caught:
            logger.debug("Dropped connection from %s, server closing", client_id)
            return

        if parsed is None:
            return

        method, target, version, headers, body = parsed
        logger.debug("Received request from %s: %s %s", client_id, method, target)
        request = Request(
            method,
            target,
            version,
            headers,
            body,
            transport=stream,
            trust_forwarded=self._trust_forwarded,
        )
        response = Response(head=method == "HEAD")

        try:
            await self.dispatch(request, response)
        except Exception:
            logger.exception("Handler failed for %s %s", method, target)
            if not response.finalized:
                error = _error_response(500, "internal server error", head=method == "HEAD")
                await self._write(stream, error.to_bytes())
                return

        wire = await response.wait_sent()
        await self._write(stream, wire)

    @staticmethod
    async def _write(stream: SocketStream, data: bytes) -> None:
        try:
            await stream.send(data)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
            logger.debug("Client went away before the response was written: %r", e)
