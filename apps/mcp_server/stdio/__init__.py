"""JSON-RPC over STDIO transport for the MCP server."""

from .server import JsonRpcStdioServer

__all__ = ["JsonRpcStdioServer"]
