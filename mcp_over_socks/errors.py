"""Error taxonomy shared by the dialer, the transports and the bridge."""

from typing import Optional


class BridgeError(Exception):
    """Base class for every error the bridge reports."""

    kind = "bridge"
    hint = ""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        # bare timeouts stringify to ""
        if self.cause is not None and str(self.cause):
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigError(BridgeError):
    kind = "config"
    hint = "Invalid configuration. Run 'mcp-over-socks --help' for usage."


class ProxyConnectionError(BridgeError):
    """The SOCKS5 proxy could not be reached, or rejected the handshake."""

    kind = "proxy"
    hint = (
        "Cannot connect to SOCKS proxy. Please check:\n"
        "  1. The SOCKS proxy is running\n"
        "  2. The proxy address is correct (e.g., socks5://localhost:1080)\n"
        "  3. No firewall is blocking the connection"
    )


class RemoteConnectionError(BridgeError):
    """The remote MCP server could not be connected to through the proxy."""

    kind = "remote"
    hint = (
        "Cannot connect to MCP server. Please check:\n"
        "  1. The MCP server is running\n"
        "  2. The server URL is correct\n"
        "  3. The server is accessible through the SOCKS proxy"
    )


class SendError(BridgeError):
    """A single outgoing message failed. Recoverable."""

    kind = "send"

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, cause)
        self.status = status


class TransportClosedError(BridgeError):
    kind = "closed"
    hint = "The connection to the MCP server was closed. Restart the bridge to reconnect."


class RequestTimeoutError(BridgeError):
    kind = "timeout"
    hint = (
        "Request timed out. Please check:\n"
        "  1. Network connectivity\n"
        "  2. Server responsiveness\n"
        "  3. Consider increasing --timeout value"
    )


def _chain(err: Optional[BaseException]):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def _is(err: Optional[BaseException], cls: type) -> bool:
    return any(isinstance(e, cls) for e in _chain(err))


def is_proxy_error(err: Optional[BaseException]) -> bool:
    return _is(err, ProxyConnectionError)


def is_timeout_error(err: Optional[BaseException]) -> bool:
    return _is(err, RequestTimeoutError)


def classify(err: Optional[BaseException]) -> Optional[BridgeError]:
    """Return the outermost classified error in the cause chain, if any."""
    for e in _chain(err):
        if isinstance(e, BridgeError) and e.hint:
            return e
    return None


def format_user_friendly_error(err: Optional[BaseException]) -> str:
    if err is None:
        return ""
    classified = classify(err)
    if classified is not None:
        return classified.hint
    return str(err)
