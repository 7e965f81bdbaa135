"""
Reconnect policy: exponential backoff with jitter and an attempt budget.
"""

import logging
import random
from typing import Optional

from .config import ReconnectConfig


logger = logging.getLogger("tradefeed.reconnect")


class ReconnectPolicy:
    """
    Decides whether and when to retry opening the transport.

    `attempt` is the 1-based number of the connection attempt about to be
    made within the current outage. The first open after `connect()` is
    attempt 1 and is never delayed by the manager; every later attempt
    asks `next_delay` first.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: Optional[int] = None,
        jitter: float = 0.2,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            base_delay: Delay for attempt 1, in seconds
            max_delay: Cap for any single delay, in seconds
            max_attempts: Attempts allowed per outage (None = unlimited)
            jitter: Relative jitter, 0.2 means ±20%
            rng: Random source (injectable for testing)
        """
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: ReconnectConfig, rng: Optional[random.Random] = None) -> "ReconnectPolicy":
        return cls(
            base_delay=config.base_delay_ms / 1000,
            max_delay=config.max_delay_ms / 1000,
            max_attempts=config.max_attempts,
            jitter=config.jitter,
            rng=rng
        )

    def backoff(self, attempt: int) -> float:
        """Un-jittered delay for an attempt."""
        exponent = max(attempt - 1, 0)
        # Avoid float overflow for very long outages
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def next_delay(self, attempt: int) -> Optional[float]:
        """
        Delay before making `attempt`, or None to give up.

        Returns:
            Seconds to wait, or None once attempt exceeds max_attempts
        """
        if self.max_attempts is not None and attempt > self.max_attempts:
            logger.debug(f"Attempt {attempt} exceeds budget of {self.max_attempts}")
            return None

        delay = self.backoff(attempt)
        if self.jitter:
            delay *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return min(max(delay, 0.0), self.max_delay)

    def __repr__(self) -> str:
        return (
            f"ReconnectPolicy(base_delay={self.base_delay}, max_delay={self.max_delay}, "
            f"max_attempts={self.max_attempts}, jitter={self.jitter})"
        )
