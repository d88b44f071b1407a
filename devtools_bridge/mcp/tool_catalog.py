"""
Static MCP surface of the bridge: server descriptor and tool catalog.

The tools are executed by the DevTools plugin; the bridge only advertises
them and forwards calls.
"""

import copy
from typing import Any, Dict, List

from .. import __version__

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "obsidian-devtools"

TOOLS: List[Dict[str, Any]] = [
    {
        "name": "query_elements",
        "description": "Query DOM elements using CSS selectors",
        "inputSchema": {
            "type": "object",
            "properties": {
                "selector": {
                    "type": "string",
                    "description": "CSS selector to find elements",
                },
            },
            "required": ["selector"],
        },
    },
    {
        "name": "get_computed_styles",
        "description": "Get computed styles for an element",
        "inputSchema": {
            "type": "object",
            "properties": {
                "selector": {
                    "type": "string",
                    "description": "CSS selector to target element",
                },
            },
            "required": ["selector"],
        },
    },
    {
        "name": "get_console_logs",
        "description": "Get recent console logs",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {
                    "type": "number",
                    "description": "Maximum number of logs to retrieve",
                    "default": 100,
                },
            },
        },
    },
]


def server_descriptor() -> Dict[str, Any]:
    """Result of ``initialize``."""
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {},
        "serverInfo": {
            "name": SERVER_NAME,
            "version": __version__,
        },
    }


def list_tools() -> Dict[str, Any]:
    """Result of ``tools/list``."""
    return {"tools": copy.deepcopy(TOOLS)}


def tool_names() -> List[str]:
    return [tool["name"] for tool in TOOLS]
