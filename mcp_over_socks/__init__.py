"""
mcp-over-socks - MCP bridge over a SOCKS5 proxy

This package relays line-delimited JSON-RPC between a local stdio client
and a remote MCP server that is only reachable through a SOCKS5 proxy,
over either an SSE stream or streamable HTTP request/response calls.
"""

__version__ = "0.2.0"
