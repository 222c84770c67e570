"""HTTP layer of xmt.

A small HTTP/1.1 server implemented with AnyIO sockets, with a response
controller that guarantees exactly one response per exchange.
"""

from .request import Request, RequestError
from .response import CONTENT_TYPE_ALIASES, BodyKind, Response
from .router import Handler, Router
from .server import Address, HttpServer

__all__ = [
    "Address",
    "BodyKind",
    "CONTENT_TYPE_ALIASES",
    "Handler",
    "HttpServer",
    "Request",
    "RequestError",
    "Response",
    "Router",
]
