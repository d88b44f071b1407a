"""Obsidian DevTools MCP bridge."""

__version__ = "1.0.0"
