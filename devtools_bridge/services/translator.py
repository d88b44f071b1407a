"""
MCP Protocol Translator
=======================

JSON-RPC 2.0 over stdio, one JSON object per line.

- initialize / tools/list / resources/*: answered locally
- tools/call: forwarded to the plugin through the correlator, answered
  asynchronously under the caller's own id
- every request gets exactly one response line, flushed immediately
"""

import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional, Set, TextIO

from ..mcp import tool_catalog
from ..utils.errors import (
    INVALID_REQUEST,
    PARSE_ERROR,
    InvalidRequestError,
    MethodNotFoundError,
    PeerNotConnectedError,
    jsonrpc_error,
)
from .correlator import RequestCorrelator

logger = logging.getLogger("devtools.translator")

READ_CHUNK = 64 * 1024


class FrameBuffer:
    """Buffer-until-newline accumulation; a partial line waits for the next chunk."""

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer.extend(chunk)
        lines = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline == -1:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            if line.strip():
                lines.append(line)
        return lines

    @property
    def pending(self) -> int:
        return len(self._buffer)


class ProtocolTranslator:
    """
    MCP front end of the bridge.

    Unterstützt:
    - initialize, notifications/initialized
    - tools/list, tools/call
    - resources/list, resources/templates/list
    """

    def __init__(self, correlator: RequestCorrelator, output: Optional[TextIO] = None):
        self.correlator = correlator
        self.output = output if output is not None else sys.stdout
        self._inflight: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "initialize": self._handle_initialize,
            "notifications/initialized": self._handle_initialized,
            "tools/list": self._handle_tools_list,
            "resources/list": self._handle_resources_list,
            "resources/templates/list": self._handle_resource_templates_list,
        }

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def _write(self, message: Dict[str, Any]) -> None:
        line = json.dumps(message, ensure_ascii=False, default=str)
        logger.debug(f"Raw response to be written: {line}")
        self.output.write(line + "\n")
        self.output.flush()

    def send_result(self, request_id: Any, result: Any) -> None:
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def send_error(self, request_id: Any, error: Dict[str, Any]) -> None:
        logger.info(f"Sending MCP error for id {request_id!r}: {error.get('message')}")
        self._write({"jsonrpc": "2.0", "id": request_id, "error": error})

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    async def run(self, reader: asyncio.StreamReader) -> None:
        """Read stdin chunks until EOF."""
        frames = FrameBuffer()
        while True:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                break
            for line in frames.feed(chunk):
                self.handle_line(line)
        if frames.pending:
            logger.warning(f"Discarding {frames.pending} bytes of unterminated input at EOF")
        logger.info("MCP input closed")

    def handle_line(self, line: str) -> None:
        logger.debug(f"Raw MCP input: {line}")
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing message ({PARSE_ERROR}): {e}; raw line: {line[:200]}")
            return
        if not isinstance(message, dict):
            logger.error(f"Dropping non-object frame ({INVALID_REQUEST}): {line[:200]}")
            return
        self.handle_message(message)

    def handle_message(self, message: Dict[str, Any]) -> None:
        has_id = "id" in message
        request_id = message.get("id")
        method = message.get("method")

        try:
            if not isinstance(method, str):
                if has_id:
                    raise InvalidRequestError("Invalid Request: missing method")
                logger.warning(f"Dropping frame without method or id: {message}")
                return

            if method == "tools/call":
                if not has_id:
                    logger.warning("Ignoring tools/call sent as a notification")
                    return
                self._start_tool_call(message)
                return

            handler = self._handlers.get(method)
            if handler is None:
                if not has_id:
                    logger.debug(f"Received notification: {method}")
                    return
                raise MethodNotFoundError(method)

            result = handler(message)
            if has_id:
                self.send_result(request_id, result)
            else:
                logger.debug(f"Received notification: {method}")
        except Exception as e:
            logger.error(f"Error handling MCP request {method!r}: {e}")
            if has_id:
                self.send_error(request_id, jsonrpc_error(e))

    # -------------------------------------------------------------------------
    # Local methods
    # -------------------------------------------------------------------------

    def _handle_initialize(self, message: Dict[str, Any]) -> Dict[str, Any]:
        params = message.get("params")
        client = params.get("clientInfo") if isinstance(params, dict) else None
        name = client.get("name", "unknown") if isinstance(client, dict) else "unknown"
        logger.info(f"MCP client initialized: {name}")
        return tool_catalog.server_descriptor()

    def _handle_initialized(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def _handle_tools_list(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return tool_catalog.list_tools()

    def _handle_resources_list(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return {"resources": []}

    def _handle_resource_templates_list(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return {"resourceTemplates": []}

    # -------------------------------------------------------------------------
    # tools/call
    # -------------------------------------------------------------------------

    def _start_tool_call(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        params = message.get("params") or {}
        if not isinstance(params, dict) or not isinstance(params.get("name"), str):
            raise InvalidRequestError("Invalid params: tools/call requires a tool name")
        if not self.correlator.link.connected:
            raise PeerNotConnectedError("Not connected to DevTools plugin")

        if params["name"] not in tool_catalog.tool_names():
            logger.warning(f"tools/call for unlisted tool {params['name']!r}, forwarding anyway")
        logger.info(f"tools/call {params['name']} (id {request_id!r})")
        task = asyncio.create_task(self._forward_tool_call(request_id, params))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _forward_tool_call(self, request_id: Any, params: Dict[str, Any]) -> None:
        arguments = params.get("arguments") or {}
        try:
            result = await self.correlator.send(params["name"], arguments, client_id=request_id)
        except asyncio.CancelledError:
            self.send_error(request_id, jsonrpc_error(PeerNotConnectedError("Bridge shutting down")))
            raise
        except Exception as e:
            logger.error(f"tools/call {params['name']} failed: {e}")
            self.send_error(request_id, jsonrpc_error(e))
            return
        logger.debug(f"tools/call - Got result from plugin for id {request_id!r}")
        self.send_result(request_id, result)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def cancel_inflight(self) -> None:
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for every forwarded tools/call to be answered."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
