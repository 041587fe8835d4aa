"""Tests for the streaming (SSE) transport against an in-process server."""

import asyncio

import aiohttp
import pytest
from aiohttp import web

from mcp_over_socks.errors import (
    RemoteConnectionError,
    SendError,
    TransportClosedError,
    format_user_friendly_error,
    is_timeout_error,
)
from mcp_over_socks.sse import SSETransport, message_endpoint
from mcp_over_socks.transport import ConnectionState


def sse_app(events=(), hold=None, posts=None, post_status=202, stream_delay=0, post_delay=0):
    """Serve ``events`` on GET /sse and record POSTs to / and /messages."""

    async def stream(request):
        await asyncio.sleep(stream_delay)
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for chunk in events:
            await response.write(chunk.encode())
        if hold is not None:
            await hold.wait()
        return response

    async def post(request):
        await asyncio.sleep(post_delay)
        posts.append((request.path_qs, await request.read(), request.headers.get("Content-Type")))
        if post_status >= 300:
            return web.Response(status=post_status, text="rejected by server")
        return web.Response(status=post_status)

    app = web.Application()
    app.router.add_get("/sse", stream)
    app.router.add_post("/", post)
    app.router.add_post("/messages", post)
    return app


def test_message_endpoint():
    assert message_endpoint("http://remote:8080/sse") == "http://remote:8080"
    assert message_endpoint("http://remote:8080/events") == "http://remote:8080/events"


class TestConnect:
    """Opening the event stream"""

    @pytest.mark.asyncio
    async def test_connect_and_receive_in_order(self, serve):
        hold = asyncio.Event()
        events = ['data: {"id":1}\n\n', ': keepalive\n\n', 'data: {"id":2}\n\n']
        async with serve(sse_app(events, hold)) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            try:
                await transport.connect()
                assert transport.state == ConnectionState.ACTIVE
                assert await asyncio.wait_for(transport.receive(), 5) == b'{"id":1}'
                assert await asyncio.wait_for(transport.receive(), 5) == b'{"id":2}'
            finally:
                hold.set()
                await transport.close()
            assert transport.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_non_200_status(self, serve):
        async with serve(web.Application()) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            with pytest.raises(RemoteConnectionError, match=r"status 404 \(expected 200\)"):
                await transport.connect()
            assert transport.state == ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_wrong_content_type(self, serve):
        async def json_handler(request):
            return web.json_response({"jsonrpc": "2.0"})

        app = web.Application()
        app.router.add_get("/sse", json_handler)
        async with serve(app) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            with pytest.raises(RemoteConnectionError) as exc_info:
                await transport.connect()
            assert "Unexpected content type 'application/json" in str(exc_info.value)
            assert "expected 'text/event-stream'" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_unreachable(self, closed_port):
        async with aiohttp.ClientSession() as session:
            transport = SSETransport(f"http://127.0.0.1:{closed_port}/sse", session, 5)
            with pytest.raises(RemoteConnectionError, match="Connection refused"):
                await transport.connect()
            assert transport.state == ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_slow_server_is_timeout(self, serve):
        async with serve(sse_app(stream_delay=3)) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 0.5)
            with pytest.raises(RemoteConnectionError, match="Connection timeout to") as exc_info:
                await transport.connect()
            assert transport.state == ConnectionState.FAILED

        assert is_timeout_error(exc_info.value)


class TestStream:
    """Event delivery after connect"""

    @pytest.mark.asyncio
    async def test_server_close_ends_stream(self, serve):
        async with serve(sse_app(['data: {"id":1}\n\n'])) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            try:
                await transport.connect()
                assert await asyncio.wait_for(transport.receive(), 5) == b'{"id":1}'
                assert await asyncio.wait_for(transport.receive(), 5) is None
            finally:
                await transport.close()

    @pytest.mark.asyncio
    async def test_endpoint_event_redirects_posts(self, serve):
        hold = asyncio.Event()
        posts = []
        events = ["event: endpoint\ndata: /messages?session=abc\n\n", 'data: {"id":1}\n\n']
        app = sse_app(events, hold, posts)
        async with serve(app) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            try:
                await transport.connect()
                # the endpoint announcement is consumed, not relayed
                assert await asyncio.wait_for(transport.receive(), 5) == b'{"id":1}'
                assert transport.post_url == f"{base_url}/messages?session=abc"

                await transport.send(b'{"jsonrpc":"2.0","id":2,"method":"ping"}')
            finally:
                hold.set()
                await transport.close()

        assert posts == [
            ("/messages?session=abc", b'{"jsonrpc":"2.0","id":2,"method":"ping"}', "application/json")
        ]


class TestSend:
    """Posting client messages"""

    @pytest.mark.asyncio
    async def test_send_posts_to_stream_base(self, serve):
        hold = asyncio.Event()
        posts = []
        async with serve(sse_app(hold=hold, posts=posts)) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            try:
                await transport.connect()
                await transport.send(b'{"jsonrpc":"2.0","id":1,"method":"initialize"}')
            finally:
                hold.set()
                await transport.close()

        assert posts == [("/", b'{"jsonrpc":"2.0","id":1,"method":"initialize"}', "application/json")]

    @pytest.mark.asyncio
    async def test_send_rejected_by_server(self, serve):
        hold = asyncio.Event()
        app = sse_app(hold=hold, posts=[], post_status=500)
        async with serve(app) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            try:
                await transport.connect()
                with pytest.raises(SendError) as exc_info:
                    await transport.send(b'{"jsonrpc":"2.0","id":1,"method":"ping"}')
            finally:
                hold.set()
                await transport.close()

        assert exc_info.value.status == 500
        assert "server returned status 500: rejected by server" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_send_after_close(self, serve):
        hold = asyncio.Event()
        async with serve(sse_app(hold=hold)) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 5)
            await transport.connect()
            hold.set()
            await transport.close()
            await transport.close()
            with pytest.raises(TransportClosedError):
                await transport.send(b"{}")

    @pytest.mark.asyncio
    async def test_slow_post_is_timeout(self, serve):
        hold = asyncio.Event()
        app = sse_app(hold=hold, posts=[], post_delay=3)
        async with serve(app) as base_url, aiohttp.ClientSession() as session:
            transport = SSETransport(f"{base_url}/sse", session, 0.5)
            try:
                await transport.connect()
                with pytest.raises(SendError) as exc_info:
                    await transport.send(b'{"jsonrpc":"2.0","id":1,"method":"ping"}')
                assert transport.state == ConnectionState.ACTIVE
            finally:
                hold.set()
                await transport.close()

        err = exc_info.value
        assert str(err).startswith(f"request timed out after 0.5s: no response from {base_url}")
        assert is_timeout_error(err)
        assert "--timeout" in format_user_friendly_error(err)
