"""Expose tools registered by web pages (WebMCP) to MCP controllers through Playwright."""

__version__ = "0.1.0"
