import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from mcp_over_socks.config import TransportKind, guess_transport_from_url
from mcp_over_socks.errors import BridgeError
from mcp_over_socks.transport import EVENT_STREAM_CONTENT_TYPE, JSON_CONTENT_TYPE

DETECT_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


@dataclass
class Detection:
    kind: TransportKind
    content_type: Optional[str] = None
    status: Optional[int] = None
    error: Optional[BaseException] = None


async def probe_transport(
    server_url: str,
    session: aiohttp.ClientSession,
    timeout: float = DETECT_TIMEOUT,
    logger: logging.Logger = logger,
) -> Detection:
    """Classify the server by the Content-Type its URL answers a GET with.

    A failed probe falls back to SSE; the real connect that follows reports
    the problem properly if the guess is wrong.
    """
    headers = {"Accept": f"{EVENT_STREAM_CONTENT_TYPE}, {JSON_CONTENT_TYPE}"}
    try:
        async with session.get(
            server_url, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            content_type = response.headers.get("Content-Type", "")
            status = response.status
            # an event stream never ends on its own
            response.close()
    except (BridgeError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        logger.debug(f"Transport detection failed, defaulting to SSE: {e}")
        return Detection(TransportKind.SSE, error=e)

    if content_type.startswith(EVENT_STREAM_CONTENT_TYPE):
        kind = TransportKind.SSE
    elif content_type.startswith(JSON_CONTENT_TYPE):
        kind = TransportKind.STREAMABLE
    else:
        kind = TransportKind.SSE
    logger.debug(f"Detected {kind.value} transport (status {status}, content type '{content_type}')")
    return Detection(kind, content_type=content_type, status=status)


async def resolve_transport_kind(
    requested: TransportKind,
    server_url: str,
    session: aiohttp.ClientSession,
    logger: logging.Logger = logger,
) -> TransportKind:
    """Pinned kinds win, then the URL suffix, then a one-off probe."""
    if requested != TransportKind.AUTO:
        return requested
    guessed = guess_transport_from_url(server_url)
    if guessed != TransportKind.AUTO:
        return guessed
    return (await probe_transport(server_url, session, logger=logger)).kind
