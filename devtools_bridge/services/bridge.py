"""
Bridge Unit
===========

One Listener + Correlator + Translator set per process, wired together:

    stdin -> ProtocolTranslator -> RequestCorrelator -> PeerListener -> plugin
    plugin -> PeerListener -> RequestCorrelator -> ProtocolTranslator -> stdout

Runs until stdin closes, a signal arrives, or the port range is given up on.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional, TextIO

from ..config import Settings
from ..utils.errors import ConfigurationError, PortExhaustedError
from ..utils.pidfile import PidFile
from .correlator import RequestCorrelator
from .port_allocator import PortAllocator, PortStore
from .socket_listener import PeerListener
from .translator import ProtocolTranslator

logger = logging.getLogger("devtools.bridge")

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def open_stdin_reader() -> asyncio.StreamReader:
    """Non-blocking reader over the process' stdin."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


def install_stop_signals(loop: asyncio.AbstractEventLoop, callback) -> None:
    """Route SIGINT/SIGTERM to ``callback(sig)``."""
    for sig in STOP_SIGNALS:
        try:
            loop.add_signal_handler(sig, callback, sig)
        except (NotImplementedError, RuntimeError):
            # Windows / non-main thread
            pass


def remove_stop_signals(loop: asyncio.AbstractEventLoop) -> None:
    for sig in STOP_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            pass


class Bridge:
    def __init__(self, settings: Settings, output: Optional[TextIO] = None):
        self.settings = settings
        self.store = PortStore(settings.resolved_port_file)
        self.allocator = PortAllocator(
            settings.port_range,
            self.store,
            bind_retry_delay=settings.bind_retry_delay,
            sweep_retry_delay=settings.sweep_retry_delay,
            max_sweeps=settings.max_sweeps,
        )
        self.listener = PeerListener(
            self.allocator,
            host=settings.host,
            ping_interval=settings.ping_interval,
            restart_delay=settings.listener_restart_delay,
            max_size=settings.max_message_size,
        )
        self.correlator = RequestCorrelator(self.listener, timeout=settings.request_timeout)
        self.translator = ProtocolTranslator(self.correlator, output=output)

        self.listener.on_message = self.correlator.on_peer_message
        self.listener.on_disconnect = self.correlator.reject_all

        self.pidfile = PidFile(settings.bridge_pid_file)
        self._stop: Optional[asyncio.Event] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self, reader: Optional[asyncio.StreamReader] = None) -> int:
        """Serve until shutdown. Returns the process exit code."""
        loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        install_stop_signals(loop, self._on_signal)

        logger.info("Starting MCP server...")
        try:
            self.pidfile.write()
        except OSError as e:
            logger.warning(f"Could not write {self.pidfile.path}: {e}")

        if reader is None:
            reader = await open_stdin_reader()

        listener_task = asyncio.create_task(self.listener.run(), name="listener")
        input_task = asyncio.create_task(self.translator.run(reader), name="stdin")
        stop_task = asyncio.create_task(self._stop.wait(), name="stop")
        health_task = asyncio.create_task(self._health_loop(), name="health")

        exit_code = 0
        try:
            done, _ = await asyncio.wait(
                {listener_task, input_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if listener_task in done:
                exc = listener_task.exception()
                if isinstance(exc, (PortExhaustedError, ConfigurationError)):
                    logger.error(f"Fatal startup error: {exc}")
                    exit_code = 1
                elif exc is not None:
                    logger.error(f"Listener failed: {exc!r}")
                    exit_code = 1
            elif input_task in done:
                exc = input_task.exception()
                if exc is not None:
                    logger.error(f"Error reading MCP input: {exc!r}")
                logger.info("stdin closed, shutting down")
            else:
                logger.info("Shutdown requested")
        finally:
            for task in (input_task, stop_task, health_task):
                task.cancel()
            await self.shutdown()
            if not listener_task.done():
                listener_task.cancel()
            await asyncio.gather(listener_task, input_task, stop_task, health_task, return_exceptions=True)
            remove_stop_signals(loop)

        logger.info(f"Bridge stopped (exit code {exit_code})")
        return exit_code

    def request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def shutdown(self) -> None:
        """Answer in-flight calls, close the plugin socket and the server, drop bridge.pid."""
        logger.info("Cleaning up...")
        await self.translator.cancel_inflight()
        self.correlator.reject_all()
        await self.listener.close()
        self.pidfile.remove()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        self.request_stop()

    # -------------------------------------------------------------------------
    # Health check
    # -------------------------------------------------------------------------

    def health_snapshot(self) -> dict:
        snapshot = self.listener.snapshot()
        oldest = self.correlator.oldest_pending_age()
        snapshot.update({
            "pending_requests": self.correlator.pending_count,
            "oldest_pending_age": round(oldest, 1) if oldest is not None else None,
            "inflight_calls": self.translator.inflight,
        })
        return snapshot

    async def _health_loop(self) -> None:
        await asyncio.sleep(self.settings.health_check_delay)
        while True:
            logger.info(f"Health check: {self.health_snapshot()}")
            await asyncio.sleep(self.settings.health_check_interval)
