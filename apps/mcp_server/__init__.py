"""kyscan MCP server: HTTP and STDIO transports over the kyverno toolpacks."""
