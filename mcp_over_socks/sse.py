import asyncio
import codecs
import logging
from typing import Optional
from urllib.parse import urljoin

import aiohttp

from mcp_over_socks.errors import (
    BridgeError,
    RemoteConnectionError,
    RequestTimeoutError,
    SendError,
)
from mcp_over_socks.events import EventStreamParser
from mcp_over_socks.transport import (
    EVENT_STREAM_CONTENT_TYPE,
    JSON_CONTENT_TYPE,
    ConnectionState,
    Transport,
    describe_connect_failure,
)

STREAM_SUFFIX = "/sse"
ENDPOINT_EVENT = "endpoint"


def message_endpoint(server_url: str) -> str:
    """POST target for outgoing messages: the stream URL without its /sse segment."""
    if server_url.endswith(STREAM_SUFFIX):
        return server_url[: -len(STREAM_SUFFIX)]
    return server_url


class SSETransport(Transport):
    """Streaming transport: one long-lived GET delivering text/event-stream."""

    streaming = True

    def __init__(
        self,
        server_url: str,
        session: aiohttp.ClientSession,
        timeout: float,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(server_url, session, timeout, logger)
        self.post_url = message_endpoint(server_url)
        self._response: Optional[aiohttp.ClientResponse] = None
        self._reader_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        self._ensure_open()
        self.state = ConnectionState.CONNECTING
        headers = {
            "Accept": EVENT_STREAM_CONTENT_TYPE,
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
        # no total timeout: the stream stays open for the whole run
        timeout = aiohttp.ClientTimeout(total=None, connect=self.timeout, sock_connect=self.timeout)

        try:
            # bounds the wait for response headers too
            response = await asyncio.wait_for(
                self.session.get(self.server_url, headers=headers, timeout=timeout), self.timeout
            )
        except BridgeError:
            self.state = ConnectionState.FAILED
            raise
        except asyncio.TimeoutError as e:
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError(
                describe_connect_failure(self.server_url, e, "SSE server"),
                RequestTimeoutError(f"no response within {self.timeout:g}s", e),
            )
        except (aiohttp.ClientError, OSError) as e:
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError(
                describe_connect_failure(self.server_url, e, "SSE server"), e
            )

        if response.status != 200:
            response.close()
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError(
                f"SSE server returned status {response.status} (expected 200)"
            )

        content_type = response.headers.get("Content-Type", "")
        if not content_type.startswith(EVENT_STREAM_CONTENT_TYPE):
            response.close()
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError(
                f"Unexpected content type '{content_type}' - expected "
                f"'{EVENT_STREAM_CONTENT_TYPE}'. Is this an SSE endpoint?"
            )

        self._response = response
        self.state = ConnectionState.ACTIVE
        self._reader_task = asyncio.create_task(self._read_events(response))
        self.logger.info(f"SSE stream established: {self.server_url}")

    async def _read_events(self, response: aiohttp.ClientResponse) -> None:
        parser = EventStreamParser()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        error: Optional[BaseException] = None
        try:
            async for chunk in response.content.iter_any():
                for event in parser.feed(decoder.decode(chunk)):
                    if event.event == ENDPOINT_EVENT:
                        self.post_url = urljoin(self.server_url, event.data.strip())
                        self.logger.info(f"Server announced message endpoint: {self.post_url}")
                        continue
                    # blocks while the consumer lags behind
                    await self.messages.put(event.data.encode("utf-8"))
            self.logger.info("SSE stream closed by server")
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, OSError, ValueError) as e:
            if self.state == ConnectionState.ACTIVE:
                self.logger.error(f"SSE stream error: {e}")
            error = e
        finally:
            self.messages.close(error)

    async def send(self, message: bytes) -> None:
        self._ensure_open()
        headers = {"Content-Type": JSON_CONTENT_TYPE}
        async with self._lock:
            try:
                async with self.session.post(
                    self.post_url, data=message, headers=headers, timeout=self.request_timeout()
                ) as response:
                    if not 200 <= response.status < 300:
                        body = await response.text(errors="replace")
                        raise SendError(
                            f"server returned status {response.status}: {body}",
                            status=response.status,
                        )
            except SendError:
                raise
            except asyncio.TimeoutError as e:
                raise SendError(
                    f"request timed out after {self.timeout:g}s",
                    RequestTimeoutError(f"no response from {self.post_url}", e),
                )
            except (BridgeError, aiohttp.ClientError, OSError) as e:
                raise SendError("failed to send request", e)

    async def close(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        if self._response is not None:
            self._response.close()
            self._response = None
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        self.messages.close()
