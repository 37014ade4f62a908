"""MCP server for controlling an already-running browser over its debugging protocol."""

__version__ = "1.0.0"
