"""Relay between a local line-delimited JSON-RPC stream and a remote transport."""

import asyncio
import json
import logging
import sys
from typing import Any, BinaryIO, Optional

import aiohttp

from mcp_over_socks.config import BridgeConfig, TransportKind
from mcp_over_socks.detector import resolve_transport_kind
from mcp_over_socks.dialer import SocksDialer
from mcp_over_socks.errors import (
    BridgeError,
    ProxyConnectionError,
    RemoteConnectionError,
    SendError,
    TransportClosedError,
)
from mcp_over_socks.sse import SSETransport
from mcp_over_socks.streamable import StreamableHTTPTransport
from mcp_over_socks.transport import ConnectionState, Transport, is_valid_json

MAX_LINE_SIZE = 10 * 1024 * 1024
READ_TIMEOUT = 30.0
SEND_ERROR_CODE = -32000


def extract_id(message: bytes) -> Any:
    try:
        decoded = json.loads(message)
    except ValueError:
        return None
    if isinstance(decoded, dict):
        return decoded.get("id")
    return None


def error_response(message: bytes, error: BaseException) -> bytes:
    response = {
        "jsonrpc": "2.0",
        "id": extract_id(message),
        "error": {"code": SEND_ERROR_CODE, "message": str(error)},
    }
    return json.dumps(response).encode("utf-8")


async def open_stdin(limit: int = MAX_LINE_SIZE) -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
    return reader


class Bridge:
    """Owns one transport for the lifetime of a run.

    ``run`` connects once, pumps messages in both directions and tears down
    exactly once, whichever of operator stop, local EOF or a fatal pump
    error comes first.
    """

    def __init__(
        self,
        transport: Transport,
        reader: asyncio.StreamReader,
        output: BinaryIO,
        logger: Optional[logging.Logger] = None,
        read_timeout: float = READ_TIMEOUT,
    ):
        self.transport = transport
        self.reader = reader
        self.output = output
        self.logger = logger or logging.getLogger(__name__)
        self.read_timeout = read_timeout
        self.state = ConnectionState.UNCONNECTED
        self._write_lock = asyncio.Lock()
        self._torn_down = False

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        if self.state != ConnectionState.UNCONNECTED:
            raise BridgeError(f"bridge cannot be reused once {self.state.value}")

        tasks = []
        try:
            await self._connect()

            # replies either arrive inline with each send or on their own stream
            deliver_inline = not self.transport.streaming
            tasks.append(asyncio.create_task(self._pump_inbound(deliver_inline), name="inbound"))
            if not deliver_inline:
                tasks.append(asyncio.create_task(self._pump_outbound(), name="outbound"))
            if stop is not None:
                tasks.append(asyncio.create_task(stop.wait(), name="stop"))

            pending = set(tasks)
            while True:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.get_name() == "stop":
                        self.logger.info("Shutting down bridge")
                        return
                    if task.exception() is not None:
                        self.state = ConnectionState.FAILED
                        raise task.exception()
                    self.logger.info("Local input closed")
                # streamed replies may still be in flight after local EOF
                if not any(task.get_name() == "outbound" for task in pending):
                    return
        finally:
            await self._teardown(tasks)

    async def _connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        self.logger.info(f"Connecting to MCP server: {self.transport.server_url}")
        try:
            await self.transport.connect()
        except (ProxyConnectionError, RemoteConnectionError):
            self.state = ConnectionState.FAILED
            raise
        except (BridgeError, OSError) as e:
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError("failed to connect to MCP server", e)
        self.state = ConnectionState.ACTIVE
        self.logger.info("Connected to MCP server successfully")

    async def _teardown(self, tasks) -> None:
        if self._torn_down:
            return
        self._torn_down = True

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self.logger.info("Disconnecting from MCP server")
        try:
            await self.transport.close()
        finally:
            if self.state != ConnectionState.FAILED:
                self.state = ConnectionState.CLOSED
            self.output.flush()
            self.logger.debug("Connection closed")

    async def _pump_inbound(self, deliver_inline: bool) -> None:
        while True:
            try:
                line = await self.reader.readline()
            except ValueError as e:
                # the oversized line is discarded by the reader
                self.logger.error(f"Dropping oversized input line: {e}")
                continue

            if not line:
                return
            message = line.rstrip(b"\r\n")
            if not message.strip():
                continue

            if not is_valid_json(message):
                self.logger.error("Invalid JSON received from stdin")
                continue

            self.logger.debug(f"Sending request to server: {message.decode('utf-8', errors='replace')}")
            try:
                await self.transport.send(message)
            except SendError as e:
                self.logger.error(f"Failed to send request: {e}")
                await self.write(error_response(message, e))
                continue

            if deliver_inline:
                await self._deliver_reply()

    async def _deliver_reply(self) -> None:
        reply = await self.transport.receive()
        if reply is None:
            raise TransportClosedError("connection closed")
        self.logger.debug(f"Received response from server: {reply.decode('utf-8', errors='replace')}")
        await self.write(reply)

    async def _pump_outbound(self) -> None:
        while True:
            try:
                message = await asyncio.wait_for(self.transport.receive(), timeout=self.read_timeout)
            except asyncio.TimeoutError:
                continue

            if message is None:
                raise TransportClosedError("connection closed by server")
            if not is_valid_json(message):
                self.logger.error(f"Dropping non-JSON message from server: {message[:200]!r}")
                continue
            self.logger.debug(f"Received response from server: {message.decode('utf-8', errors='replace')}")
            await self.write(message)

    async def write(self, message: bytes) -> None:
        # the line protocol needs one document per line; raw newlines in
        # valid JSON are insignificant whitespace
        message = message.replace(b"\r", b" ").replace(b"\n", b" ")
        async with self._write_lock:
            self.output.write(message + b"\n")
            self.output.flush()


def create_transport(
    kind: TransportKind,
    server_url: str,
    session: aiohttp.ClientSession,
    timeout: float,
    logger: Optional[logging.Logger] = None,
) -> Transport:
    if kind == TransportKind.STREAMABLE:
        return StreamableHTTPTransport(server_url, session, timeout, logger)
    return SSETransport(server_url, session, timeout, logger)


async def run_bridge(
    config: BridgeConfig,
    reader: asyncio.StreamReader,
    output: BinaryIO,
    stop: Optional[asyncio.Event] = None,
    dialer: Optional[SocksDialer] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Build the proxied client and transport described by ``config`` and relay until done."""
    logger = logger or logging.getLogger(__name__)
    dialer = dialer or SocksDialer.from_config(config, logger=logger.getChild("dialer"))
    if dialer.remote_dns:
        logger.debug("Using remote DNS resolution (socks5h://)")
    else:
        logger.debug("Using local DNS resolution (socks5://)")

    async with dialer.session(config.timeout) as session:
        kind = await resolve_transport_kind(
            config.transport_kind, config.server_url, session, logger=logger
        )
        logger.info(f"Using {kind.value} transport")
        transport = create_transport(
            kind, config.server_url, session, config.timeout, logger.getChild(kind.value)
        )
        bridge = Bridge(transport, reader, output, logger=logger)
        await bridge.run(stop)
