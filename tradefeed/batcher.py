"""
Outbound message batching.

Coalesces frames enqueued within a short window into a single
{"type": "batch", "messages": [...]} write, while letting latency
sensitive kinds bypass the window without breaking FIFO order.
"""

import logging
from typing import Callable, Iterable, List, Optional

from .timers import Scheduler, TimerHandle
from .types import BATCH_TYPE, FrameKind, OutboundFrame


logger = logging.getLogger("tradefeed.batcher")

# Pong must never wait for a batch window
ALWAYS_IMMEDIATE = frozenset({FrameKind.PONG})


class MessageBatcher:
    """
    Queue for outgoing frames with time- and size-bounded batching.

    One batcher serves one open transport. The manager builds a fresh
    batcher on every (re)open and discards the old one on close, so
    frames never leak across connections.
    """

    def __init__(
        self,
        write: Callable[[dict], object],
        scheduler: Scheduler,
        interval_ms: int = 50,
        max_batch_size: int = 100,
        no_batch_types: Iterable[str | FrameKind] = ()
    ):
        """
        Args:
            write: Sends one wire envelope (dict) to the transport
            scheduler: Timer source for the flush window
            interval_ms: Batch window in milliseconds
            max_batch_size: Queue length that forces an immediate flush
            no_batch_types: Frame kinds written immediately, by name
                ("payload") or wire type ("message")
        """
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")

        self._write = write
        self._scheduler = scheduler
        self._interval = interval_ms / 1000
        self._max_batch_size = max_batch_size
        self._no_batch = frozenset(FrameKind.parse(t) for t in no_batch_types) | ALWAYS_IMMEDIATE

        self._queue: List[OutboundFrame] = []
        self._timer: Optional[TimerHandle] = None
        self._stopped = False

        self.frames_written = 0
        self.writes = 0

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def bypasses(self, frame: OutboundFrame) -> bool:
        return frame.kind in self._no_batch

    def enqueue(self, frame: OutboundFrame) -> None:
        """
        Add a frame.

        Bypass kinds flush anything pending first and are then written
        on their own, preserving global enqueue order.
        """
        if self._stopped:
            logger.debug(f"Batcher stopped, dropping {frame.kind.value} frame")
            return

        if self.bypasses(frame):
            self.flush()
            self._send(frame.to_dict(), 1)
            return

        self._queue.append(frame)

        if len(self._queue) >= self._max_batch_size:
            self.flush()
            return

        if self._timer is None:
            self._timer = self._scheduler.call_later(self._interval, self._on_timer)

    def flush(self) -> int:
        """
        Write everything pending.

        Returns:
            Number of frames written
        """
        self._cancel_timer()

        if not self._queue:
            return 0

        frames, self._queue = self._queue, []

        if len(frames) == 1:
            self._send(frames[0].to_dict(), 1)
        else:
            self._send(
                {"type": BATCH_TYPE, "messages": [frame.to_dict() for frame in frames]},
                len(frames)
            )
        return len(frames)

    def discard(self) -> int:
        """Drop pending frames without sending. Returns how many were dropped."""
        self._cancel_timer()
        dropped = len(self._queue)
        self._queue = []
        if dropped:
            logger.info(f"Discarded {dropped} pending frame(s)")
        return dropped

    def stop(self) -> int:
        """Stop accepting frames and discard anything pending."""
        self._stopped = True
        return self.discard()

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _send(self, envelope: dict, frame_count: int) -> None:
        self.writes += 1
        self.frames_written += frame_count
        try:
            self._write(envelope)
        except Exception as e:
            # The transport reports its own failures through its callbacks
            logger.error(f"Failed to write {envelope.get('type')} envelope: {e}")
        if frame_count > 1:
            logger.debug(f"Flushed batch with {frame_count} frames")
