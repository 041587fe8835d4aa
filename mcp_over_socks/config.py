import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import ParseResult, unquote, urlparse

from mcp_over_socks.errors import ConfigError

DEFAULT_TIMEOUT = 30.0
DEFAULT_PROXY_PORT = 1080

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "error": logging.ERROR,
}

TRANSPORT_NAMES = ("auto", "sse", "streamable", "streamablehttp", "streamable-http", "http")


class TransportKind(str, Enum):
    SSE = "sse"
    STREAMABLE = "streamable"
    AUTO = "auto"


def parse_log_level(value: Optional[str]) -> int:
    return LOG_LEVELS.get((value or "").lower(), logging.INFO)


def parse_transport_kind(value: Optional[str]) -> TransportKind:
    value = (value or "").lower()
    if value == "sse":
        return TransportKind.SSE
    if value in ("streamable", "streamablehttp", "streamable-http", "http"):
        return TransportKind.STREAMABLE
    return TransportKind.AUTO


def guess_transport_from_url(url: str) -> TransportKind:
    """SSE endpoints usually end with /sse, streamable HTTP ones with /mcp."""
    path = urlparse(url).path.rstrip("/")
    if path.endswith("/sse"):
        return TransportKind.SSE
    if path.endswith("/mcp"):
        return TransportKind.STREAMABLE
    return TransportKind.AUTO


def _parse_url(value: str, error: str) -> ParseResult:
    parsed = urlparse(value)
    try:
        # urlparse only validates the port on access
        parsed.port
    except ValueError as e:
        raise ConfigError(f"{error}: {e}")
    return parsed


@dataclass(frozen=True)
class BridgeConfig:
    proxy_url: str
    server_url: str
    timeout: float = DEFAULT_TIMEOUT
    log_level: str = "info"
    transport: str = TransportKind.AUTO.value

    def validate(self) -> None:
        if not self.proxy_url:
            raise ConfigError("proxy address is required (use --proxy)")
        if not self.proxy_url.startswith(("socks5://", "socks5h://")):
            raise ConfigError("proxy address must start with socks5:// or socks5h://")
        proxy = _parse_url(self.proxy_url, "invalid proxy address format")
        if not proxy.hostname:
            raise ConfigError("proxy address must include host")

        if not self.server_url:
            raise ConfigError("server URL is required (use --server)")
        if not self.server_url.startswith(("http://", "https://")):
            raise ConfigError("server URL must start with http:// or https://")
        server = _parse_url(self.server_url, "invalid server URL format")
        if not server.hostname:
            raise ConfigError("server URL must include host")

        if self.timeout is None or self.timeout <= 0:
            raise ConfigError("timeout must be positive")

        if (self.transport or "auto").lower() not in TRANSPORT_NAMES:
            raise ConfigError(f"unknown transport type: {self.transport}")

    @property
    def proxy_scheme(self) -> str:
        return urlparse(self.proxy_url).scheme

    @property
    def remote_dns(self) -> bool:
        """socks5h:// delegates hostname resolution to the proxy."""
        return self.proxy_scheme == "socks5h"

    @property
    def proxy_host(self) -> str:
        return urlparse(self.proxy_url).hostname or ""

    @property
    def proxy_port(self) -> int:
        return urlparse(self.proxy_url).port or DEFAULT_PROXY_PORT

    @property
    def proxy_auth(self) -> Optional[Tuple[str, str]]:
        parsed = urlparse(self.proxy_url)
        if parsed.username is None or parsed.password is None:
            return None
        return unquote(parsed.username), unquote(parsed.password)

    @property
    def transport_kind(self) -> TransportKind:
        return parse_transport_kind(self.transport)
