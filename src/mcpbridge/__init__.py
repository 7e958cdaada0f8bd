"""HTTP bridge to MCP servers over stdio, HTTP and SSE transports."""

__version__ = "1.0.0"
