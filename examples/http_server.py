"""
HTTP Server Example

Runs the xmt Router on a fixed port. Every request goes to one handler, which
answers depending on the path.

- One request per connection (Connection: close).
- `send()` picks the content type from the value: dict -> JSON, str -> text,
  bytes -> octet-stream, unless a content-type header says otherwise.

Run:
  python examples/http_server.py

Then try:
  curl -i http://127.0.0.1:8080/
  curl -i http://127.0.0.1:8080/health
  curl -i http://127.0.0.1:8080/page
  curl -i -X POST http://127.0.0.1:8080/echo -d 'hello there'
"""

from __future__ import annotations

import logging

import anyio

from xmt import Request, Response, Router, configure_logging


router = Router()


@router.common
async def handle(req: Request, res: Response) -> None:
    res.set_header({"x-powered-by": "XmT"})
    match req.path:
        case "/":
            res.send(f"hello {req.get_client_ip()}\n")
        case "/health":
            res.send({"ok": True})
        case "/page":
            res.set_header({"content-type": "html"}).send("<p>hello</p>")
        case "/echo":
            # Echo the raw body bytes back.
            res.set_header({"content-type": req.get_header("content-type", "bin")})
            res.send(req.body)
        case "/slow":
            await anyio.sleep(1)
            res.send("finally\n")
        case _:
            res.set_status(404).send("not found\n")


if __name__ == "__main__":
    configure_logging(logging.DEBUG)
    router.run(8080)
