"""Kyverno compliance tools exposed by the MCP server."""
