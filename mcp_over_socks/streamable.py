import asyncio
import logging
from typing import Optional

import aiohttp

from mcp_over_socks.errors import (
    BridgeError,
    RemoteConnectionError,
    RequestTimeoutError,
    SendError,
)
from mcp_over_socks.transport import (
    JSON_CONTENT_TYPE,
    ConnectionState,
    Transport,
    describe_connect_failure,
    is_valid_json,
)

# Servers that do not implement OPTIONS are still reachable
PROBE_ALLOWED_STATUSES = frozenset({405})


class StreamableHTTPTransport(Transport):
    """Request/response transport: every message is one POST, its body the reply.

    No connection is held open between messages.
    """

    streaming = False

    def __init__(
        self,
        server_url: str,
        session: aiohttp.ClientSession,
        timeout: float,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(server_url, session, timeout, logger)

    async def connect(self) -> None:
        self._ensure_open()
        self.state = ConnectionState.CONNECTING
        try:
            async with self.session.options(
                self.server_url, timeout=self.request_timeout()
            ) as response:
                status = response.status
        except BridgeError:
            self.state = ConnectionState.FAILED
            raise
        except asyncio.TimeoutError as e:
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError(
                describe_connect_failure(self.server_url, e, "Streamable HTTP server"),
                RequestTimeoutError(f"no response within {self.timeout:g}s", e),
            )
        except (aiohttp.ClientError, OSError) as e:
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError(
                describe_connect_failure(self.server_url, e, "Streamable HTTP server"), e
            )

        if status >= 400 and status not in PROBE_ALLOWED_STATUSES:
            self.state = ConnectionState.FAILED
            raise RemoteConnectionError(f"Server returned status {status}")

        self.state = ConnectionState.ACTIVE
        self.logger.info(f"Streamable HTTP server reachable: {self.server_url}")

    async def send(self, message: bytes) -> None:
        self._ensure_open()
        headers = {"Content-Type": JSON_CONTENT_TYPE, "Accept": JSON_CONTENT_TYPE}
        async with self._lock:
            try:
                async with self.session.post(
                    self.server_url, data=message, headers=headers, timeout=self.request_timeout()
                ) as response:
                    body = await response.read()
                    status = response.status
            except asyncio.TimeoutError as e:
                raise SendError(
                    f"request timed out after {self.timeout:g}s",
                    RequestTimeoutError(f"no response from {self.server_url}", e),
                )
            except (aiohttp.ClientError, OSError, BridgeError) as e:
                raise SendError("failed to send request", e)

            if not 200 <= status < 300:
                raise SendError(
                    f"server returned status {status}: {body.decode('utf-8', errors='replace')}",
                    status=status,
                )
            if not is_valid_json(body):
                raise SendError("invalid JSON response from server", status=status)

            await self.messages.put(body)

    async def close(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self.messages.close()
