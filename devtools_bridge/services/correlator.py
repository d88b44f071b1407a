"""
Request Correlator
==================

Matches plugin responses to the tool calls that caused them.

Every outbound call gets an internal integer id (1, 2, 3, ... for the life of
this object) and a pending entry with its own timeout. The entry is settled
exactly once: by the response, by the timeout, or by a disconnect, whichever
comes first. Anything arriving for an id that is no longer pending is dropped.

Internal ids only ever travel on the plugin socket. Replies to the MCP client
always carry the client's own id, which the translator keeps; ``client_id`` is
stored here for diagnostics only.
"""

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..utils.errors import (
    BridgeError,
    PeerCallError,
    PeerConnectionClosedError,
    PeerNotConnectedError,
    PeerTimeoutError,
)

logger = logging.getLogger("devtools.correlator")


class PeerLink(Protocol):
    """What the correlator needs from the socket side."""

    @property
    def connected(self) -> bool: ...

    async def send_text(self, frame: str) -> None: ...


@dataclass
class PendingRequest:
    id: int
    name: str
    future: asyncio.Future
    timeout_handle: Optional[asyncio.TimerHandle] = None
    client_id: Any = None
    created_at: float = field(default_factory=time.time)

    def settle(self, result: Any = None, error: Optional[BaseException] = None) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
        if self.future.done():
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)


class RequestCorrelator:
    def __init__(self, link: PeerLink, timeout: float = 15.0):
        self.link = link
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> List[int]:
        return list(self._pending)

    def oldest_pending_age(self) -> Optional[float]:
        if not self._pending:
            return None
        oldest = min(p.created_at for p in self._pending.values())
        return time.time() - oldest

    async def send(self, name: str, arguments: Optional[Dict[str, Any]] = None, client_id: Any = None) -> Any:
        """Forward one tool call to the plugin and wait for its result.

        Raises:
            PeerNotConnectedError: no plugin connected (nothing is registered)
            PeerTimeoutError: no answer within ``timeout``
            PeerConnectionClosedError: the plugin went away first
            PeerCallError: the plugin answered with an error
        """
        if not self.link.connected:
            raise PeerNotConnectedError("No connection to DevTools plugin")

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        pending = PendingRequest(
            id=request_id,
            name=name,
            future=loop.create_future(),
            client_id=client_id,
        )
        pending.timeout_handle = loop.call_later(self.timeout, self._expire, request_id)
        self._pending[request_id] = pending

        frame = {
            "id": request_id,
            "name": name,
            "arguments": arguments or {},
            "jsonrpc": "2.0",
        }
        logger.debug(f"Forwarding to plugin: {request_id} {name} (client id {client_id!r})")
        try:
            await self.link.send_text(json.dumps(frame))
        except BridgeError as e:
            self._settle(request_id, error=e)
        except Exception as e:
            self._settle(request_id, error=PeerConnectionClosedError(f"Failed to send request: {e}"))

        try:
            return await pending.future
        finally:
            # Caller gave up (cancelled): stop tracking
            self._discard(request_id)

    def on_peer_message(self, raw: str) -> None:
        """Route one frame from the plugin to its pending request."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Unparseable frame from plugin dropped: {e}")
            return
        if not isinstance(message, dict) or "id" not in message:
            logger.warning(f"Frame from plugin without id dropped: {str(raw)[:200]}")
            return

        request_id = message["id"]
        if isinstance(request_id, bool) or not isinstance(request_id, int) or request_id not in self._pending:
            logger.info(f"No pending request for response {request_id!r}, dropped")
            return

        error = message.get("error")
        if error is not None:
            text = error.get("message", "Unknown command error") if isinstance(error, dict) else str(error)
            self._settle(request_id, error=PeerCallError(text, {"request_id": request_id}))
        else:
            self._settle(request_id, result=message.get("result"))

    def reject_all(self, exc: Optional[BridgeError] = None) -> int:
        """Fail every pending request at once (peer gone). Returns how many."""
        exc = exc or PeerConnectionClosedError("WebSocket connection closed")
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.settle(error=exc)
        if pending:
            logger.warning(f"Rejected {len(pending)} pending request(s): {exc.message}")
        return len(pending)

    def _expire(self, request_id: int) -> None:
        if request_id in self._pending:
            logger.warning(f"Request {request_id} timed out after {self.timeout:g}s")
            self._settle(
                request_id,
                error=PeerTimeoutError(f"Request timed out after {self.timeout:g} seconds"),
            )

    def _settle(self, request_id: int, result: Any = None, error: Optional[BaseException] = None) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        pending.settle(result=result, error=error)
        return True

    def _discard(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
