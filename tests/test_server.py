"""End-to-end tests: a Router on an ephemeral port, driven over real sockets."""

import json
from contextlib import asynccontextmanager

import anyio
import httpx
import pytest

from xmt import HttpServer, Router


pytestmark = pytest.mark.anyio


def client() -> httpx.AsyncClient:
    return httpx.AsyncClient(trust_env=False, timeout=5.0)


def url(address, path: str = "/") -> str:
    return f"http://127.0.0.1:{address.port}{path}"


@asynccontextmanager
async def running(handler=None, **options):
    router = Router(handler, **options)
    async with router.serving(0) as address:
        yield router, address


async def raw_exchange(address, data: bytes) -> bytes:
    async with await anyio.connect_tcp("127.0.0.1", address.port) as stream:
        await stream.send(data)
        chunks = []
        while True:
            try:
                chunks.append(await stream.receive())
            except (anyio.EndOfStream, anyio.BrokenResourceError):
                break
    return b"".join(chunks)


class TestResponses:
    """Content negotiation as seen by an HTTP client."""

    async def test_send_json(self):
        async with running(lambda req, res: res.send({"json": "hello!"})) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers["content-type"] == "application/json"
        assert response.json()["json"] == "hello!"

    async def test_send_text(self):
        async with running(lambda req, res: res.send("hello text!")) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers["content-type"] == "text/plain"
        assert response.text == "hello text!"

    async def test_send_binary(self):
        payload = b"sevenryze\x00\xff"
        async with running(lambda req, res: res.send(payload)) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers["content-type"] == "application/octet-stream"
        assert response.content == payload

    async def test_send_html(self):
        def handler(req, res):
            res.set_header({"content-type": "html"})
            res.send("<p>hello</p>")

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers["content-type"] == "text/html; charset=utf-8"
        assert response.text == "<p>hello</p>"

    async def test_send_many_times(self):
        def handler(req, res):
            res.send({"json": "hello 1!"})
            res.send({"json": "hello 2!"})
            res.send({"json": "hello 3!"})

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers["content-type"] == "application/json"
        assert response.json() == {"json": "hello 1!"}

    @pytest.mark.parametrize("alias, expected", [
        ("json", "application/json; charset=utf-8"),
        ("html", "text/html; charset=utf-8"),
        ("text", "text/plain; charset=utf-8"),
        ("bin", "application/octet-stream"),
    ])
    async def test_content_type_alias(self, alias, expected):
        def handler(req, res):
            res.set_header({"content-type": alias, "x-powered-by": "XmT"})
            res.send()

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers["content-type"] == expected
        assert response.content == b""

    async def test_set_header(self):
        def handler(req, res):
            res.set_header({"set-cookie": 123, "x-powered-by": "XmT"})
            res.send()

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers["x-powered-by"] == "XmT"
        assert response.headers.get_list("set-cookie") == ["123"]

    async def test_multiple_cookies_are_separate_headers(self):
        def handler(req, res):
            res.set_header({"set-cookie": "a=1"})
            res.set_header({"set-cookie": "b=2"})
            res.send()

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]

    async def test_set_status(self):
        async with running(lambda req, res: res.set_status(717).send()) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.status_code == 717

    async def test_echo_request_body(self):
        async with running(lambda req, res: res.send(req.body)) as (_, address):
            async with client() as c:
                response = await c.post(url(address, "/echo"), content=b"hello there")

        assert response.content == b"hello there"
        assert response.headers["content-type"] == "application/octet-stream"

    async def test_head_request_has_no_body(self):
        async with running(lambda req, res: res.send("hello")) as (_, address):
            async with client() as c:
                response = await c.head(url(address))

        assert response.status_code == 200
        assert response.headers["content-length"] == "5"
        assert response.content == b""


class TestRequests:
    """The request view inside a live exchange."""

    async def test_client_ip(self):
        seen = []

        def handler(req, res):
            seen.append(req.get_client_ip())
            res.send()

        async with running(handler) as (_, address):
            async with client() as c:
                await c.get(url(address))

        if address.address != "::":
            pytest.skip("no dual-stack IPv6 listener on this host")
        assert seen == ["::ffff:127.0.0.1"]

    async def test_request_fields(self):
        seen = {}

        def handler(req, res):
            seen.update(method=req.method, path=req.path, query=req.query, ua=req.get_header("user-agent"))
            res.send()

        async with running(handler) as (_, address):
            async with client() as c:
                await c.get(url(address, "/coffee?sugar=2"), headers={"User-Agent": "xmt-test"})

        assert seen == {"method": "GET", "path": "/coffee", "query": "sugar=2", "ua": "xmt-test"}


class TestExchangeLifecycle:
    """Async handlers, failures and the lifecycle of the acceptor."""

    async def test_async_handler_sends_late(self):
        async def handler(req, res):
            res.set_status(202)
            await anyio.sleep(0.02)
            res.send({"late": True})
            res.send({"late": False})

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.status_code == 202
        assert response.json() == {"late": True}

    async def test_no_handler_is_404(self):
        async with running() as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.status_code == 404

    async def test_register_handler_as_decorator(self):
        router = Router()

        @router.common
        def handler(req, res):
            res.send("decorated")

        async with router.serving(0) as address:
            async with client() as c:
                response = await c.get(url(address))

        assert response.text == "decorated"

    async def test_handler_error_before_send_is_500(self):
        def handler(req, res):
            res.set_header({"x-partial": "1"})
            raise RuntimeError("boom")

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.status_code == 500
        assert "x-partial" not in response.headers

    async def test_handler_error_on_head_request_has_no_body(self):
        def handler(req, res):
            raise RuntimeError("boom")

        async with running(handler) as (_, address):
            wire = await raw_exchange(address, b"HEAD / HTTP/1.1\r\nHost: x\r\n\r\n")

        assert wire.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
        assert b"content-length: 21\r\n" in wire
        assert wire.endswith(b"\r\n\r\n")

    async def test_handler_error_after_send_keeps_response(self):
        def handler(req, res):
            res.set_status(201).send("created")
            raise RuntimeError("boom")

        async with running(handler) as (_, address):
            async with client() as c:
                response = await c.get(url(address))

        assert response.status_code == 201
        assert response.text == "created"

    async def test_malformed_request_is_400(self):
        async with running(lambda req, res: res.send("unreachable")) as (_, address):
            wire = await raw_exchange(address, b"BROKEN\r\n\r\n")

        assert wire.startswith(b"HTTP/1.1 400 Bad Request\r\n")

    async def test_oversized_body_is_413(self):
        async with running(lambda req, res: res.send("unreachable"), max_body_bytes=4) as (_, address):
            wire = await raw_exchange(
                address, b"POST / HTTP/1.1\r\nContent-Length: 10\r\n\r\n0123456789"
            )

        assert wire.startswith(b"HTTP/1.1 413 ")

    async def test_listen_reports_bound_port(self):
        router = Router(lambda req, res: res.send())
        async with anyio.create_task_group() as tg:
            address = await router.listen(0, task_group=tg)
            assert address.port > 0
            assert router.get_listening_address() == address
            assert router.listening
            await router.close()

        assert not router.listening
        with pytest.raises(RuntimeError, match="not listening"):
            router.get_listening_address()

    async def test_listen_twice_raises(self):
        router = Router()
        async with router.serving(0):
            async with anyio.create_task_group() as tg:
                with pytest.raises(RuntimeError, match="already listening"):
                    await router.listen(0, task_group=tg)

    async def test_close_when_not_listening(self):
        await Router().close()

    async def test_listen_again_after_close(self):
        router = Router(lambda req, res: res.send("again"))
        async with router.serving(0):
            pass
        async with router.serving(0) as address:
            async with client() as c:
                response = await c.get(url(address))

        assert response.text == "again"

    async def test_close_drops_connection_that_never_sends(self):
        router = Router(lambda req, res: res.send())
        async with anyio.create_task_group() as tg:
            address = await router.listen(0, task_group=tg)
            async with await anyio.connect_tcp("127.0.0.1", address.port) as stream:
                await anyio.sleep(0.05)
                with anyio.fail_after(2):
                    await router.close()
                with anyio.fail_after(2):
                    with pytest.raises((anyio.EndOfStream, anyio.BrokenResourceError)):
                        await stream.receive()

        assert not router.listening

    async def test_close_waits_for_in_flight_exchange(self):
        entered = anyio.Event()
        release = anyio.Event()
        closed = anyio.Event()
        results = {}

        async def handler(req, res):
            entered.set()
            await release.wait()
            res.send("finally")

        router = Router(handler)
        async with anyio.create_task_group() as tg:
            address = await router.listen(0, task_group=tg)

            async def fetch():
                async with client() as c:
                    results["response"] = await c.get(url(address))

            async def shutdown():
                await router.close()
                closed.set()

            tg.start_soon(fetch)
            with anyio.fail_after(5):
                await entered.wait()
            tg.start_soon(shutdown)

            await anyio.sleep(0.05)
            assert not closed.is_set()
            release.set()
            with anyio.fail_after(5):
                await closed.wait()

        assert results["response"].text == "finally"

    async def test_base_server_requires_dispatch(self):
        server = HttpServer()
        async with server.serving(0) as address:
            async with client() as c:
                response = await c.get(url(address))

        assert response.status_code == 500


async def test_many_concurrent_exchanges_are_isolated():
    async def handler(req, res):
        n = int(req.query)
        res.set_status(200 + n % 3).set_header({"x-n": n})
        await anyio.sleep(0.01 * (n % 4))
        res.send({"n": n})

    results = {}
    async with running(handler) as (_, address):
        async with client() as c:
            async def fetch(n):
                results[n] = await c.get(url(address, f"/?{n}"))

            async with anyio.create_task_group() as tg:
                for n in range(20):
                    tg.start_soon(fetch, n)

    for n, response in results.items():
        assert response.status_code == 200 + n % 3
        assert response.headers["x-n"] == str(n)
        assert json.loads(response.content) == {"n": n}
