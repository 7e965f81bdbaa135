"""
Idle watchdog for the streaming connection.

Detects connections that died silently (no TCP RST, no close frame) by
watching inbound traffic. The server pings periodically, so a healthy
connection is never quiet for long; one that stays quiet past the
timeout is reported as idle and the manager replaces it.
"""

import logging
from typing import Callable, Optional

from .timers import Scheduler, TimerHandle


logger = logging.getLogger("tradefeed.heartbeat")


class IdleWatchdog:
    """
    Periodic sweep over the time since the last inbound frame.

    Sweeps run every half timeout, so idleness is detected between
    1x and 1.5x the configured timeout.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        timeout_ms: int,
        on_idle: Callable[[float], None]
    ):
        """
        Args:
            scheduler: Timer and clock source
            timeout_ms: Allowed silence in milliseconds
            on_idle: Called once with the idle time in seconds
        """
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        self._scheduler = scheduler
        self._timeout = timeout_ms / 1000
        self._on_idle = on_idle

        self._timer: Optional[TimerHandle] = None
        self._running = False
        self._last_seen: float = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start sweeping. Counts as activity."""
        if self._running:
            return
        self._running = True
        self._last_seen = self._scheduler.now()
        self._schedule()

    def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def touch(self) -> None:
        """Record inbound activity."""
        self._last_seen = self._scheduler.now()

    def idle_seconds(self) -> float:
        return self._scheduler.now() - self._last_seen

    def _schedule(self) -> None:
        self._timer = self._scheduler.call_later(self._timeout / 2, self._sweep)

    def _sweep(self) -> None:
        self._timer = None
        if not self._running:
            return

        idle = self.idle_seconds()
        if idle > self._timeout:
            logger.warning(f"No inbound traffic for {idle:.1f}s, dropping connection")
            self._running = False
            self._on_idle(idle)
            return

        self._schedule()
