"""
Plugin Socket Listener
======================

WebSocket server the DevTools plugin dials into.

- exactly one plugin connection at a time, a new connection replaces the old one
- liveness sweep: ping every ``ping_interval``, drop the peer if the previous
  ping went unanswered
- disconnect of any kind fails every pending request (they were addressed
  to that plugin instance and cannot be replayed against another one)
- an unexpected server shutdown recreates the listener after a short delay
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from ..utils.errors import BridgeError, PeerConnectionClosedError, PeerNotConnectedError, PortExhaustedError
from .port_allocator import PortAllocator

logger = logging.getLogger("devtools.listener")


@dataclass
class PeerConnection:
    """The one live plugin connection."""
    socket: Any
    is_alive: bool = True
    last_pong: float = field(default_factory=time.time)
    connected_at: float = field(default_factory=time.time)

    @property
    def remote(self) -> str:
        address = getattr(self.socket, "remote_address", None)
        if isinstance(address, (tuple, list)) and len(address) >= 2:
            return f"{address[0]}:{address[1]}"
        return "unknown"


class PeerListener:
    """
    Owns the listening socket and the single plugin connection.
    Incoming frames go to ``on_message``, losses are reported via ``on_disconnect``.
    """

    def __init__(
        self,
        allocator: PortAllocator,
        host: str = "127.0.0.1",
        ping_interval: float = 5.0,
        restart_delay: float = 2.0,
        max_size: Optional[int] = 100 * 1024 * 1024,
    ):
        self.allocator = allocator
        self.host = host
        self.ping_interval = ping_interval
        self.restart_delay = restart_delay
        self.max_size = max_size

        self.on_message: Callable[[str], None] = lambda raw: None
        self.on_disconnect: Callable[[BridgeError], None] = lambda exc: None

        self.peer: Optional[PeerConnection] = None
        self.port: Optional[int] = None
        self.ready = asyncio.Event()
        self._server: Optional[Server] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.peer is not None

    # -------------------------------------------------------------------------
    # Server lifecycle
    # -------------------------------------------------------------------------

    async def _bind(self, port: int) -> Server:
        # websockets' own keepalive stays off, the liveness sweep replaces it
        return await serve(
            self._handle_connection,
            self.host,
            port,
            ping_interval=None,
            ping_timeout=None,
            close_timeout=2,
            max_size=self.max_size,
        )

    async def run(self):
        """Bind, serve until closed, recreate the server on unexpected shutdown."""
        self._closing = False
        while not self._closing:
            try:
                port, server = await self.allocator.acquire(self._bind)
            except PortExhaustedError:
                raise
            except Exception as e:
                logger.error(f"WebSocket server error: {e}")
                await asyncio.sleep(self.restart_delay)
                continue

            self._server = server
            self.port = port
            self.ready.set()
            self._sweep_task = asyncio.create_task(self._liveness_loop())
            # close() may have run while the bind was in progress
            if self._closing:
                server.close()
            try:
                await server.wait_closed()
            except asyncio.CancelledError:
                server.close()
                raise
            finally:
                self.ready.clear()
                self._stop_sweep()

            if self._closing:
                break
            logger.error("WebSocket server closed unexpectedly, restarting...")
            await self._drop_peer("WebSocket server closed")
            await asyncio.sleep(self.restart_delay)

        logger.info("WebSocket server closed")

    async def close(self):
        """Stop sweeping, close the plugin connection and the server."""
        self._closing = True
        self._stop_sweep()
        await self._drop_peer("Bridge shutting down")
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def _stop_sweep(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection):
        await self.attach(websocket)

    async def attach(self, websocket: Any):
        """Serve one plugin connection until it goes away."""
        peer = PeerConnection(socket=websocket)
        logger.info(f"DevTools plugin connected ({peer.remote})")

        # Last writer wins: never two peers at once
        while self.peer is not None:
            previous = self.peer
            logger.info(f"Closing existing connection ({previous.remote})")
            self.peer = None
            self.on_disconnect(PeerConnectionClosedError("Connection superseded by a new plugin instance"))
            await self._close_socket(previous)

        self.peer = peer
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                try:
                    self.on_message(message)
                except Exception as e:
                    logger.error(f"Error handling WebSocket message: {e}")
        except ConnectionClosed as e:
            logger.info(f"Plugin connection closed: {e}")
        except Exception as e:
            logger.error(f"WebSocket connection error: {e}")
        finally:
            if self.peer is peer:
                self.peer = None
                logger.info("DevTools plugin disconnected")
                self.on_disconnect(PeerConnectionClosedError("WebSocket connection closed"))

    async def _drop_peer(self, reason: str):
        peer = self.peer
        if peer is None:
            return
        self.peer = None
        self.on_disconnect(PeerConnectionClosedError(reason))
        await self._close_socket(peer)

    async def _close_socket(self, peer: PeerConnection, terminate: bool = False):
        socket = peer.socket
        if terminate:
            transport = getattr(socket, "transport", None)
            if transport is not None:
                transport.abort()
                return
        try:
            await socket.close()
        except Exception as e:
            logger.debug(f"Error closing plugin socket: {e}")

    async def send_text(self, frame: str):
        peer = self.peer
        if peer is None:
            raise PeerNotConnectedError("No connection to DevTools plugin")
        try:
            await peer.socket.send(frame)
        except ConnectionClosed as e:
            raise PeerConnectionClosedError("WebSocket connection closed") from e

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    async def _liveness_loop(self):
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Liveness sweep error: {e}")

    async def sweep(self):
        """One ping cycle: evict a peer that missed the last pong, ping the rest."""
        peer = self.peer
        if peer is None:
            return

        if not peer.is_alive:
            logger.warning("Client connection is stale, terminating")
            self.peer = None
            self.on_disconnect(PeerConnectionClosedError("Plugin stopped answering pings"))
            await self._close_socket(peer, terminate=True)
            return

        peer.is_alive = False
        try:
            pong_waiter = await peer.socket.ping()
        except ConnectionClosed:
            return
        asyncio.ensure_future(pong_waiter).add_done_callback(
            lambda fut: self._on_pong(peer, fut)
        )

    @staticmethod
    def _on_pong(peer: PeerConnection, fut: asyncio.Future):
        if fut.cancelled() or fut.exception() is not None:
            return
        peer.is_alive = True
        peer.last_pong = time.time()

    def snapshot(self) -> Dict[str, Any]:
        peer = self.peer
        return {
            "server_port": self.port,
            "has_server": self._server is not None,
            "has_plugin_connection": peer is not None,
            "plugin_address": peer.remote if peer else None,
            "last_pong_age": round(time.time() - peer.last_pong, 1) if peer else None,
            "connected_for": round(time.time() - peer.connected_at, 1) if peer else None,
        }
