"""Minimal HTTP request/response layer over raw AnyIO sockets."""

__version__ = "0.1.0"

from .http import (
    CONTENT_TYPE_ALIASES,
    Address,
    BodyKind,
    Handler,
    HttpServer,
    Request,
    RequestError,
    Response,
    Router,
)
from .logger import configure_logging, get_logger

__all__ = [
    # Server
    "Address",
    "HttpServer",
    "Router",
    "Handler",
    # Exchange
    "Request",
    "RequestError",
    "Response",
    "BodyKind",
    "CONTENT_TYPE_ALIASES",
    # Logging
    "configure_logging",
    "get_logger",
]
