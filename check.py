import argparse
import asyncio
import logging
import sys

from mcp_over_socks.config import BridgeConfig
from mcp_over_socks.detector import DETECT_TIMEOUT, probe_transport
from mcp_over_socks.dialer import SocksDialer
from mcp_over_socks.errors import ConfigError, format_user_friendly_error, is_proxy_error

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('mcp_over_socks.check')


async def check_server(config: BridgeConfig, timeout: float = DETECT_TIMEOUT) -> int:
    """Probe the MCP server through the proxy and report which transport it speaks"""
    dialer = SocksDialer.from_config(config, logger=logger)

    logger.info("====== Checking MCP server via SOCKS5 proxy ======")
    logger.info(f"Proxy: {dialer.proxy_address} ({'remote' if dialer.remote_dns else 'local'} DNS)")
    logger.info(f"Server: {config.server_url}")

    async with dialer.session(config.timeout) as session:
        detection = await probe_transport(config.server_url, session, timeout=timeout, logger=logger)

    if detection.error is not None:
        logger.error(f"Probe failed: {detection.error}")
        hint = format_user_friendly_error(detection.error)
        if hint and hint != str(detection.error):
            logger.info(hint)
        if is_proxy_error(detection.error):
            logger.error("❌ Check failed: the SOCKS5 proxy is not usable")
            return 1
        logger.warning(f"⚠️ Server not reachable, a bridge would fall back to {detection.kind.value}")
        return 2

    logger.info(f"Status: {detection.status}")
    logger.info(f"Content-Type: {detection.content_type or '(none)'}")
    logger.info(f"✅ Detected transport: {detection.kind.value}")
    return 0


def parse_args():
    parser = argparse.ArgumentParser(description="Check an MCP server through a SOCKS5 proxy")
    parser.add_argument('--proxy', type=str, required=True,
                        help="SOCKS5 proxy URL (socks5:// or socks5h://)")
    parser.add_argument('--server', type=str, required=True,
                        help="Remote MCP server URL")
    parser.add_argument('--timeout', type=float, default=DETECT_TIMEOUT,
                        help=f"Probe timeout in seconds (default: {DETECT_TIMEOUT:g})")
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    config = BridgeConfig(proxy_url=args.proxy, server_url=args.server, timeout=args.timeout)

    try:
        config.validate()
        sys.exit(asyncio.run(check_server(config, args.timeout)))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Check interrupted by user")
        sys.exit(0)
