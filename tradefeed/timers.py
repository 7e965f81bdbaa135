"""
Timer scheduling seam.

Every delayed action in the client (batch flush, reconnect backoff,
idle sweeps) goes through a Scheduler so the whole state machine can be
driven by a manual clock in tests.
"""

import asyncio
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now(self) -> float: ...

    def ensure_ready(self) -> None:
        """Raise RuntimeError if timers cannot be scheduled right now."""
        ...


class LoopScheduler:
    """
    Scheduler backed by an asyncio event loop.

    The loop is resolved lazily so a manager can be built before the
    application's loop is running.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def ensure_ready(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            return
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise RuntimeError(
                "no running asyncio event loop - connect() and reconnect() must be called from async code"
            ) from e

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(delay, 0.0), callback)

    def now(self) -> float:
        return self.loop.time()
