import argparse
import asyncio
import logging
import re
import signal
import sys

from mcp_over_socks import __version__
from mcp_over_socks.bridge import open_stdin, run_bridge
from mcp_over_socks.config import DEFAULT_TIMEOUT, BridgeConfig, parse_log_level
from mcp_over_socks.errors import BridgeError, ConfigError, format_user_friendly_error

EPILOG = """\
proxy schemes:
  socks5://host:port   resolve the server hostname locally
  socks5h://host:port  let the proxy resolve the server hostname

examples:
  mcp-over-socks --proxy socks5://localhost:1080 --server http://mcp.example.com/sse
  mcp-over-socks --proxy socks5h://localhost:1080 --server http://internal.local/sse
"""

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, None: 1}


def parse_duration(value: str) -> float:
    """Seconds, optionally suffixed: 30, 30s, 500ms, 2m."""
    match = _DURATION.match(value)
    if not match:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _UNITS[match.group(2)]


def setup_logging(level=logging.INFO):
    # stdout carries the protocol, so diagnostics go to stderr
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="mcp-over-socks",
        description="mcp-over-socks - MCP bridge over SOCKS5 proxy",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--proxy",
        type=str,
        default="",
        help="SOCKS5 proxy URL, e.g. socks5://localhost:1080 (required)",
    )
    parser.add_argument(
        "--server",
        type=str,
        default="",
        help="Remote MCP server URL, e.g. http://remote:8080/sse (required)",
    )
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        default=DEFAULT_TIMEOUT,
        help="Request timeout (default: 30s)",
    )
    parser.add_argument(
        "--log",
        type=str,
        default="info",
        help="Log level: debug, info, error (default: info)",
    )
    parser.add_argument(
        "--transport",
        type=str,
        default="auto",
        help="Transport type: auto, sse, streamable (default: auto)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"mcp-over-socks version {__version__}",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(parse_log_level(args.log))
    logger = logging.getLogger("mcp_over_socks")

    config = BridgeConfig(
        proxy_url=args.proxy,
        server_url=args.server,
        timeout=args.timeout,
        log_level=args.log,
        transport=args.transport,
    )
    try:
        config.validate()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print("\nRun 'mcp-over-socks --help' for usage.", file=sys.stderr)
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    logger.info("Starting MCP over SOCKS bridge")
    logger.debug(f"Proxy: {config.proxy_url}")
    logger.debug(f"Server: {config.server_url}")

    try:
        reader = await open_stdin()
        await run_bridge(config, reader, sys.stdout.buffer, stop=stop, logger=logger)
    except BridgeError as e:
        logger.error(f"Bridge error [{e.kind}]: {e}")
        friendly = format_user_friendly_error(e)
        if friendly and friendly != str(e):
            print(f"\n{friendly}", file=sys.stderr)
        return 1
    finally:
        logger.info("Bridge stopped")
    return 0


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
