"""mcp-companion: connect to, supervise and query multiple MCP servers."""

__version__ = "0.1.0"
