import asyncio
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Union

import aiohttp

from mcp_over_socks.errors import TransportClosedError

DELIVERY_QUEUE_SIZE = 100

JSON_CONTENT_TYPE = "application/json"
EVENT_STREAM_CONTENT_TYPE = "text/event-stream"


class ConnectionState(str, Enum):
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


def is_valid_json(data: Union[bytes, str]) -> bool:
    try:
        json.loads(data)
    except (ValueError, TypeError):
        return False
    return True


class _Closed:
    def __init__(self, error: Optional[BaseException] = None):
        self.error = error


class DeliveryQueue:
    """Bounded, ordered hand-off from a transport to the bridge.

    ``put`` blocks while the queue is full; nothing is ever dropped. Once
    ``close`` is called every pending and future ``get`` sees the end of
    the stream after the messages queued before it.
    """

    def __init__(self, maxsize: int = DELIVERY_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed: Optional[_Closed] = None

    @property
    def closed(self) -> bool:
        return self._closed is not None

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, message: bytes) -> None:
        if self._closed is not None:
            raise TransportClosedError("delivery queue is closed")
        await self._queue.put(message)

    def close(self, error: Optional[BaseException] = None) -> None:
        if self._closed is not None:
            return
        self._closed = _Closed(error)
        try:
            self._queue.put_nowait(self._closed)
        except asyncio.QueueFull:
            # get() checks the closed flag once the backlog drains
            pass

    async def get(self) -> Optional[bytes]:
        """Next message, or None once the producer finished cleanly.

        Raises TransportClosedError when the producer failed.
        """
        if self._closed is not None and self._queue.empty():
            return self._end()
        item = await self._queue.get()
        if isinstance(item, _Closed):
            # leave the marker for later readers
            self._queue.put_nowait(item)
            return self._end()
        return item

    def _end(self) -> None:
        if self._closed is not None and self._closed.error is not None:
            raise TransportClosedError("connection to MCP server lost", self._closed.error)
        return None


class Transport(ABC):
    """Capability interface the bridge drives.

    ``streaming`` tells the bridge whether replies arrive independently of
    sends (a background producer feeds ``receive``) or exactly one reply is
    queued by each successful ``send``.
    """

    streaming = False

    def __init__(
        self,
        server_url: str,
        session: aiohttp.ClientSession,
        timeout: float,
        logger: Optional[logging.Logger] = None,
    ):
        self.server_url = server_url
        self.session = session
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.state = ConnectionState.UNCONNECTED
        self.messages = DeliveryQueue()
        self._lock = asyncio.Lock()

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def send(self, message: bytes) -> None:
        ...

    async def receive(self) -> Optional[bytes]:
        return await self.messages.get()

    @abstractmethod
    async def close(self) -> None:
        ...

    def request_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout, sock_connect=self.timeout)

    def _ensure_open(self) -> None:
        if self.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            raise TransportClosedError(f"transport is {self.state.value}")


def describe_connect_failure(server_url: str, error: BaseException, label: str = "MCP server") -> str:
    text = str(error).lower()
    # aiohttp wraps the socket error
    cause = getattr(error, "os_error", error)
    if isinstance(error, aiohttp.ClientConnectorDNSError) or "name or service not known" in text:
        return f"Cannot resolve host for {server_url} - check the URL"
    if isinstance(cause, ConnectionRefusedError) or "connection refused" in text:
        return f"Connection refused to {server_url} - is the server running?"
    if isinstance(error, asyncio.TimeoutError) or "timeout" in text or "timed out" in text:
        return f"Connection timeout to {server_url} - check network connectivity"
    return f"Failed to connect to {label} at {server_url}"
