"""Restart-rate throttle for the bridge supervisor.

Same shape as a circuit breaker: count failures, trip at a ceiling, recover
after a cooldown. Here the "failures" are child crashes and tripping defers
the next restart instead of failing a request.
"""

import time
import logging
from typing import Callable, Optional

logger = logging.getLogger("devtools.throttle")


class RestartThrottle:
    """Allows at most ``max_restarts`` restarts within ``cooldown`` seconds.

    States:
    - OPEN FOR RESTARTS: crashes are counted, restarts proceed
    - THROTTLED: ceiling reached inside the window, next restart waits
      for the cooldown; afterwards the counter starts again at zero
    """

    def __init__(
        self,
        max_restarts: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize restart throttle.

        Args:
            max_restarts: Restarts allowed inside one cooldown window
            cooldown: Window length in seconds, also the deferral length
            clock: Monotonic time source (overridable in tests)
        """
        self.max_restarts = max_restarts
        self.cooldown = cooldown
        self._clock = clock
        self.restart_count = 0
        self.last_restart_at: Optional[float] = None

    def record_crash(self) -> float:
        """Record an unexpected child exit.

        Returns:
            0.0 if the restart may proceed now, otherwise the number of
            seconds the restart must be deferred.
        """
        now = self._clock()

        # A quiet window forgets earlier crashes
        if self.last_restart_at is not None and now - self.last_restart_at >= self.cooldown:
            if self.restart_count:
                logger.info("Restart window elapsed without crashes, counter reset")
            self.restart_count = 0

        if self.restart_count >= self.max_restarts:
            logger.warning(
                "Too many restarts (%d) within %.0fs, cooling down for %.0fs",
                self.restart_count,
                self.cooldown,
                self.cooldown,
            )
            return self.cooldown

        self.restart_count += 1
        self.last_restart_at = now
        return 0.0

    def reset(self) -> None:
        """Clear the counter once a deferral has been served."""
        self.restart_count = 0
        self.last_restart_at = None

    def is_throttled(self) -> bool:
        if self.restart_count < self.max_restarts or self.last_restart_at is None:
            return False
        return self._clock() - self.last_restart_at < self.cooldown
