"""Router: an [`HttpServer`](src/xmt/http/server.py:1) that calls one registered handler."""

from __future__ import annotations

from typing import Any, Callable

from typing_extensions import override

from ..logger import get_logger
from ..type_utils import MaybeAwaitable, resolve
from .request import Request
from .response import Response
from .server import HttpServer


logger = get_logger(__name__)

Handler = Callable[[Request, Response], MaybeAwaitable[None]]


class Router(HttpServer):
    """
    Hands every exchange to the registered handler.

    The handler may be a plain function or a coroutine function. It must
    eventually call `response.send()`; the connection stays open until it does.
    Requests arriving while no handler is registered get a 404.
    """

    def __init__(self, handler: Handler | None = None, **options: Any):
        super().__init__(**options)
        self._handler: Handler | None = handler

    def register_handler(self, handler: Handler) -> Handler:
        """Set the exchange handler. Usable as a decorator."""
        if self._handler is not None and self._handler is not handler:
            logger.warning("Replacing handler %r with %r", self._handler, handler)
        self._handler = handler
        return handler

    common = register_handler

    @override
    async def dispatch(self, request: Request, response: Response) -> None:
        handler = self._handler
        if handler is None:
            response.set_status(404).send("not found")
            return
        await resolve(handler(request, response))
