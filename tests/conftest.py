"""
Shared fixtures: a manual clock and a scripted in-memory transport.
"""

import itertools
import json
from typing import Any, List, Optional

import pytest

from tradefeed.config import BatchConfig, ReconnectConfig, StreamConfig
from tradefeed.errors import TransportError
from tradefeed.manager import ConnectionManager
from tradefeed.transport import Transport, TransportCallbacks
from tradefeed.types import CloseCode


class FakeTimer:
    def __init__(self, when: float, callback, seq: int):
        self.when = when
        self.callback = callback
        self.seq = seq
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Scheduler driven by advance() instead of wall-clock time."""

    def __init__(self):
        self._now = 0.0
        self._timers: List[FakeTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def ensure_ready(self) -> None:
        pass

    def call_later(self, delay: float, callback) -> FakeTimer:
        timer = FakeTimer(self._now + max(delay, 0.0), callback, next(self._seq))
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return sorted(
            (t for t in self._timers if not t.cancelled),
            key=lambda t: (t.when, t.seq)
        )

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            timer = due[0]
            self._timers.remove(timer)
            self._now = timer.when
            timer.callback()
        self._now = target


class FakeTransport(Transport):
    """Transport whose lifecycle is scripted by the test."""

    def __init__(self, url: str, callbacks: Optional[TransportCallbacks] = None):
        super().__init__(url, callbacks)
        self.opened = False
        self.closed: Optional[tuple] = None
        self.writes: List[Any] = []

    def open(self) -> None:
        self.opened = True

    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        self.closed = (code, reason)
        self._is_open = False

    def send_raw(self, data: str) -> bool:
        if not self._is_open:
            return False
        self.writes.append(json.loads(data))
        return True

    @property
    def frames(self) -> List[dict]:
        """Written frames with batch envelopes flattened."""
        flat = []
        for envelope in self.writes:
            if envelope.get("type") == "batch":
                flat.extend(envelope["messages"])
            else:
                flat.append(envelope)
        return flat

    # Scripted events

    def fire_open(self) -> None:
        self._emit_open()

    def fire_message(self, payload: Any) -> None:
        raw = payload if isinstance(payload, (str, bytes)) else json.dumps(payload)
        self._emit_message(raw)

    def fire_close(self, code: int = CloseCode.ABNORMAL, reason: str = "") -> None:
        self._emit_close(code, reason)

    def fire_error(self, message: str = "connection refused") -> None:
        self._emit_error(TransportError(message))


class FakeTransportFactory:
    def __init__(self):
        self.transports: List[FakeTransport] = []

    def __call__(self, url: str, callbacks: TransportCallbacks) -> FakeTransport:
        transport = FakeTransport(url, callbacks)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def factory():
    return FakeTransportFactory()


@pytest.fixture
def make_config():
    def build(
        max_attempts: Optional[int] = None,
        interval_ms: int = 50,
        max_batch_size: int = 100,
        idle_timeout_ms: Optional[int] = None,
        base_delay_ms: int = 1_000,
        max_delay_ms: int = 30_000,
    ) -> StreamConfig:
        return StreamConfig(
            url="ws://feed.test/ws",
            batch=BatchConfig(interval_ms=interval_ms, max_batch_size=max_batch_size),
            reconnect=ReconnectConfig(
                base_delay_ms=base_delay_ms,
                max_delay_ms=max_delay_ms,
                max_attempts=max_attempts,
                jitter=0.0,
            ),
            idle_timeout_ms=idle_timeout_ms,
        )
    return build


@pytest.fixture
def make_manager(scheduler, factory, make_config):
    def build(**config_kwargs) -> ConnectionManager:
        return ConnectionManager(
            make_config(**config_kwargs),
            transport_factory=factory,
            scheduler=scheduler,
        )
    return build


@pytest.fixture
def open_manager(make_manager, factory):
    """Manager already in the open state with no subscriptions."""
    manager = make_manager()
    manager.connect()
    factory.latest.fire_open()
    return manager
