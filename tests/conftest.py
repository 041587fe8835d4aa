"""Shared fixtures: in-process HTTP servers and a minimal SOCKS5 proxy."""

import asyncio
import contextlib
import socket

import pytest
from aiohttp import web


@contextlib.asynccontextmanager
async def serve_app(app: web.Application):
    """Run ``app`` on an ephemeral localhost port and yield its base URL."""
    runner = web.AppRunner(app, shutdown_timeout=0.5)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        yield f"http://{host}:{port}"
    finally:
        await runner.cleanup()


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


class FakeSocksServer:
    """SOCKS5 CONNECT-only proxy (RFC 1928) with optional RFC 1929 auth.

    Every CONNECT request is recorded as ``(address_type, host, port)``;
    address types are 1 (IPv4), 3 (domain name) and 4 (IPv6).
    """

    def __init__(self, credentials=None, reply: int = 0):
        self.credentials = credentials
        self.reply = reply
        self.requests = []
        self.port = None
        self._server = None
        self._handlers = set()

    async def start(self) -> "FakeSocksServer":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        self._server.close()
        for task in list(self._handlers):
            task.cancel()
        await asyncio.gather(*self._handlers, return_exceptions=True)
        await self._server.wait_closed()

    def url(self, scheme: str = "socks5") -> str:
        if self.credentials:
            username, password = self.credentials
            return f"{scheme}://{username}:{password}@127.0.0.1:{self.port}"
        return f"{scheme}://127.0.0.1:{self.port}"

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._handlers.add(task)
        try:
            await self._serve(reader, writer)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()
            self._handlers.discard(task)

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        _version, count = await reader.readexactly(2)
        await reader.readexactly(count)

        if self.credentials:
            writer.write(b"\x05\x02")
            await reader.readexactly(1)
            username = await reader.readexactly((await reader.readexactly(1))[0])
            password = await reader.readexactly((await reader.readexactly(1))[0])
            if (username.decode(), password.decode()) != tuple(self.credentials):
                writer.write(b"\x01\x01")
                await writer.drain()
                return
            writer.write(b"\x01\x00")
        else:
            writer.write(b"\x05\x00")

        _version, _command, _reserved, address_type = await reader.readexactly(4)
        if address_type == 1:
            host = socket.inet_ntoa(await reader.readexactly(4))
        elif address_type == 3:
            host = (await reader.readexactly((await reader.readexactly(1))[0])).decode()
        else:
            host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
        port = int.from_bytes(await reader.readexactly(2), "big")
        self.requests.append((address_type, host, port))

        if self.reply != 0:
            writer.write(bytes([5, self.reply, 0, 1, 0, 0, 0, 0, 0, 0]))
            await writer.drain()
            return

        try:
            upstream_reader, upstream_writer = await asyncio.open_connection(host, port)
        except OSError:
            # host unreachable
            writer.write(b"\x05\x04\x00\x01\x00\x00\x00\x00\x00\x00")
            await writer.drain()
            return

        writer.write(b"\x05\x00\x00\x01\x00\x00\x00\x00\x00\x00")
        await writer.drain()
        await asyncio.gather(
            _pipe(reader, upstream_writer),
            _pipe(upstream_reader, writer),
        )


@contextlib.asynccontextmanager
async def socks_proxy(**kwargs):
    server = await FakeSocksServer(**kwargs).start()
    try:
        yield server
    finally:
        await server.stop()


@pytest.fixture
def serve():
    return serve_app


@pytest.fixture
def proxy():
    return socks_proxy


@pytest.fixture
def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
