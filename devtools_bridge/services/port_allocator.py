"""
Port Allocator
==============

Picks the listening port for the plugin socket from a bounded range.

- the last port that bound successfully is persisted and tried first,
  so a restarted bridge lands where the plugin last found it
- "address in use" just moves on to the next candidate
- other bind errors get one retry after a short backoff
- an exhausted range is retried after a longer delay, the plugin side
  may release a port at any time
"""

from __future__ import annotations

import asyncio
import errno
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional, Tuple, TypeVar

from ..utils.errors import PortExhaustedError
from ..utils.pidfile import atomic_write_text

logger = logging.getLogger("devtools.ports")

T = TypeVar("T")

BindFactory = Callable[[int], Awaitable[T]]


class PortStore:
    """Last-known-good port on disk (read before bind, written after bind only)."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[int]:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Error loading saved port: {e}")
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring garbled port file {self.path}: {raw[:16]!r}")
            return None

    def save(self, port: int) -> None:
        try:
            atomic_write_text(self.path, str(port))
            logger.info(f"Saved successful port: {port}")
        except OSError as e:
            logger.warning(f"Error saving port: {e}")


@dataclass
class PortState:
    attempted_range: Tuple[int, int]
    current_port: Optional[int] = None
    persisted_value: Optional[int] = None
    sweeps: int = field(default=0)


def is_address_in_use(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno in (errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", -1))


class PortAllocator:
    def __init__(
        self,
        port_range: Tuple[int, int],
        store: PortStore,
        bind_retry_delay: float = 2.0,
        sweep_retry_delay: float = 5.0,
        max_sweeps: int = 0,
    ):
        low, high = port_range
        if low > high:
            raise ValueError(f"Invalid port range {low}-{high}")
        self.store = store
        self.bind_retry_delay = bind_retry_delay
        self.sweep_retry_delay = sweep_retry_delay
        self.max_sweeps = max_sweeps
        self.state = PortState(attempted_range=(low, high))

    @property
    def current_port(self) -> Optional[int]:
        return self.state.current_port

    def _in_range(self, port: Optional[int]) -> bool:
        low, high = self.state.attempted_range
        return port is not None and low <= port <= high

    def candidates(self, hint: Optional[int]) -> Iterator[int]:
        """Hint first (if inside the range), then the range from its lower bound."""
        low, high = self.state.attempted_range
        if self._in_range(hint):
            yield hint
        for port in range(low, high + 1):
            if port != hint:
                yield port

    async def _try_bind(self, port: int, bind: BindFactory) -> Optional[T]:
        """Bind one candidate. None means "move on to the next port"."""
        for attempt in (1, 2):
            try:
                logger.info(f"Attempting to create WebSocket server on port {port}...")
                return await bind(port)
            except OSError as e:
                if is_address_in_use(e):
                    logger.info(f"Port {port} already in use, trying next port...")
                    return None
                if attempt == 2:
                    logger.error(f"Port {port} failed twice ({e}), skipping")
                    return None
                logger.error(f"Unexpected error creating server on port {port}: {e}")
                await asyncio.sleep(self.bind_retry_delay)
        return None

    async def acquire(self, bind: BindFactory) -> Tuple[int, T]:
        """Bind the first usable port and persist it.

        Args:
            bind: coroutine factory performing the actual bind for a port

        Returns:
            (port, whatever ``bind`` returned)

        Raises:
            PortExhaustedError: only when ``max_sweeps`` is set and used up
        """
        low, high = self.state.attempted_range
        while True:
            hint = self.store.load()
            self.state.persisted_value = hint
            if hint is not None and self._in_range(hint):
                logger.info(f"Loaded last successful port: {hint}")

            for port in self.candidates(hint):
                handle = await self._try_bind(port, bind)
                if handle is None:
                    continue
                self.state.current_port = port
                logger.info(f"WebSocket server successfully started on port {port}")
                self.store.save(port)
                self.state.persisted_value = port
                return port, handle

            self.state.sweeps += 1
            logger.error(f"All ports in range {low}-{high} are in use!")
            if self.max_sweeps and self.state.sweeps >= self.max_sweeps:
                raise PortExhaustedError(
                    f"No free port in range {low}-{high}",
                    {"sweeps": self.state.sweeps},
                )
            logger.warning(f"Retrying port sweep in {self.sweep_retry_delay:.0f}s")
            await asyncio.sleep(self.sweep_retry_delay)
