"""SOCKS5 dialer and the aiohttp connector built on top of it.

Two hostname resolution policies are supported:

* local (``socks5://``): the target hostname is resolved on this host and the
  proxy is asked to CONNECT to the first address returned.
* remote (``socks5h://``): the hostname is handed to the proxy unresolved.

Both run entirely on asyncio, so cancelling the calling task abandons an
in-flight resolution or handshake and closes the half-open stream.
"""

import asyncio
import ipaddress
import logging
import socket
from ssl import SSLContext
from typing import Optional, Tuple

import aiohttp
import python_socks
from aiohttp.abc import AbstractResolver
from aiohttp.client_proto import ResponseHandler
from aiohttp.resolver import ThreadedResolver
from aiohttp_socks import ProxyConnector, ProxyType
from python_socks.async_.asyncio.v2 import Proxy

from mcp_over_socks.config import BridgeConfig
from mcp_over_socks.errors import ConfigError, ProxyConnectionError, RemoteConnectionError


class ResolutionError(RemoteConnectionError):
    """The target hostname could not be resolved locally."""

    def __init__(self, host: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.host = host


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


class _StreamResponseHandler(ResponseHandler):
    # Holds the StreamWriter so the transport is not closed when it is
    # garbage collected (StreamWriter.__del__, Python >= 3.11.5).
    def __init__(self, loop: asyncio.AbstractEventLoop, writer: asyncio.StreamWriter):
        super().__init__(loop)
        self._writer = writer


class SocksDialer:
    """Stateless SOCKS5 dialer, safe to share between concurrent requests."""

    def __init__(
        self,
        proxy_host: str,
        proxy_port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        remote_dns: bool = False,
        resolver: Optional[AbstractResolver] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if not proxy_host:
            raise ConfigError("SOCKS proxy address is empty")
        self.proxy_host = proxy_host
        self.proxy_port = proxy_port
        self.username = username
        self.password = password
        self.remote_dns = remote_dns
        self._resolver = resolver
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: BridgeConfig, **kwargs) -> "SocksDialer":
        username, password = config.proxy_auth or (None, None)
        return cls(
            config.proxy_host,
            config.proxy_port,
            username=username,
            password=password,
            remote_dns=config.remote_dns,
            **kwargs,
        )

    @property
    def proxy_address(self) -> str:
        return f"{self.proxy_host}:{self.proxy_port}"

    async def resolve(self, host: str) -> str:
        """Resolve ``host`` locally; IP literals are returned untouched."""
        if is_ip_literal(host):
            return host

        if self._resolver is None:
            self._resolver = ThreadedResolver()

        try:
            results = await self._resolver.resolve(host, 0, family=socket.AF_UNSPEC)
        except OSError as e:
            raise ResolutionError(host, f"Failed to resolve hostname '{host}' locally", e)
        if not results:
            raise ResolutionError(host, f"No IP addresses found for hostname '{host}'")

        address = results[0]["host"]
        self.logger.debug(f"Resolved {host} to {address}")
        return address

    async def dial(
        self,
        host: str,
        port: int,
        ssl: Optional[SSLContext] = None,
        timeout: Optional[float] = None,
    ):
        """Open a stream to ``host:port`` through the proxy.

        Returns a python-socks ``AsyncioSocketStream``. TLS, when requested,
        is negotiated against the original hostname even if the CONNECT
        used a locally resolved address.
        """
        target = host if self.remote_dns else await self.resolve(host)

        proxy = Proxy(
            proxy_type=ProxyType.SOCKS5,
            host=self.proxy_host,
            port=self.proxy_port,
            username=self.username,
            password=self.password,
            rdns=self.remote_dns,
        )

        self.logger.debug(f"Dialing {target}:{port} via SOCKS5 proxy {self.proxy_address}")
        try:
            stream = await proxy.connect(dest_host=target, dest_port=port, timeout=timeout)
        except python_socks.ProxyTimeoutError as e:
            raise ProxyConnectionError(
                f"Timed out connecting to {host}:{port} via SOCKS5 proxy {self.proxy_address}", e
            )
        except python_socks.ProxyConnectionError as e:
            raise ProxyConnectionError(
                f"Failed to connect to SOCKS5 proxy {self.proxy_address}", e
            )
        except python_socks.ProxyError as e:
            raise ProxyConnectionError(
                f"SOCKS5 proxy {self.proxy_address} rejected CONNECT to {host}:{port}", e
            )

        if ssl is not None:
            try:
                stream = await stream.start_tls(hostname=host, ssl_context=ssl)
            except BaseException:
                await stream.close()
                raise
        return stream

    def connector(self, **kwargs) -> "SocksConnector":
        return SocksConnector(self, **kwargs)

    def session(self, timeout: float, **kwargs) -> aiohttp.ClientSession:
        """HTTP session whose every connection is dialed through this proxy."""
        return aiohttp.ClientSession(
            connector=self.connector(),
            timeout=aiohttp.ClientTimeout(total=timeout, sock_connect=timeout),
            **kwargs,
        )


class SocksConnector(ProxyConnector):
    """aiohttp connector that delegates connection setup to a SocksDialer."""

    def __init__(self, dialer: SocksDialer, **kwargs):
        super().__init__(
            host=dialer.proxy_host,
            port=dialer.proxy_port,
            proxy_type=ProxyType.SOCKS5,
            username=dialer.username,
            password=dialer.password,
            rdns=dialer.remote_dns,
            **kwargs,
        )
        self.dialer = dialer

    async def _connect_via_proxy(
        self,
        host: str,
        port: int,
        ssl: Optional[SSLContext] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[asyncio.Transport, ResponseHandler]:
        stream = await self.dialer.dial(host, port, ssl=ssl, timeout=timeout)

        transport = stream.writer.transport
        protocol = _StreamResponseHandler(self._loop, stream.writer)
        transport.set_protocol(protocol)
        protocol.connection_made(transport)
        return transport, protocol
