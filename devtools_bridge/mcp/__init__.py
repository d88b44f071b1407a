"""
MCP surface of the DevTools bridge.

This module provides:
- the server descriptor returned by ``initialize``
- the fixed tool catalog returned by ``tools/list``
"""
