"""
Connection manager for the streaming subscription client.

Integrates:
- Connection state machine with automatic reconnection
- Ref-counted topic subscriptions replayed on every (re)open
- Outbound batching through a per-connection MessageBatcher
- Inbound routing with per-callback isolation
- Optional idle watchdog for silently dropped connections
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

from .batcher import MessageBatcher
from .config import StreamConfig
from .errors import ExhaustedRetries, StreamError, TransportError
from .heartbeat import IdleWatchdog
from .reconnect import ReconnectPolicy
from .registry import SubscriptionRegistry
from .router import MessageRouter, RouterCallbacks
from .timers import LoopScheduler, Scheduler, TimerHandle
from .transport import (
    Transport,
    TransportCallbacks,
    TransportFactory,
    websocket_transport_factory
)
from .types import (
    CloseCode,
    ConnectionState,
    ErrorCallback,
    MessageCallback,
    OutboundFrame,
    StateCallback,
    StateChange
)


logger = logging.getLogger("tradefeed.manager")

_UNSET = object()


class ConnectionLogAdapter(logging.LoggerAdapter):
    """Tags every record with the manager's current state and attempt."""

    def __init__(self, base: logging.Logger, manager: "ConnectionManager"):
        super().__init__(base, {})
        self.conn_manager = manager

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        extra.setdefault("conn_state", self.conn_manager.state.value)
        extra.setdefault("conn_attempt", self.conn_manager.attempt)
        return msg, kwargs


class ConnectionManager:
    """
    Owns one logical streaming connection and its subscriptions.

    Features:
    - At most one live transport at a time
    - Exponential backoff reconnects, terminal `failed` state on give-up
    - Subscriptions survive disconnects and are fully replayed
    - Steady-state calls never raise for connection problems

    Usage:
        async def main():
            manager = ConnectionManager(StreamConfig.from_env())
            manager.on_state_change(lambda change: print(change.current))
            sub_id = manager.subscribe("ticker/BTC-ETH", handle_ticker)
            manager.connect()
            await manager.wait_until_open(timeout=10)
            ...
            manager.unsubscribe(sub_id)
            manager.disconnect()

        asyncio.run(main())
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        policy: Optional[ReconnectPolicy] = None,
        scheduler: Optional[Scheduler] = None
    ):
        """
        Initialize the connection manager.

        Args:
            config: Stream configuration (defaults to StreamConfig())
            transport_factory: Builds a transport for (url, callbacks);
                defaults to WebSocketTransport
            policy: Reconnect policy (defaults to one built from config)
            scheduler: Timer source (defaults to the running asyncio loop)
        """
        self.config = config or StreamConfig()
        self._transport_factory = transport_factory or websocket_transport_factory(
            open_timeout=self.config.open_timeout,
            close_timeout=self.config.close_timeout,
            max_message_size=self.config.max_message_size
        )
        self._policy = policy or ReconnectPolicy.from_config(self.config.reconnect)
        self._scheduler = scheduler or LoopScheduler()
        self._log = ConnectionLogAdapter(logger, self)

        self._registry = SubscriptionRegistry()
        self._router = MessageRouter(
            self._registry,
            RouterCallbacks(
                send_pong=self._send_pong,
                on_server_error=self._notify_error
            )
        )

        self._state = ConnectionState.CLOSED
        self._transport: Optional[Transport] = None
        self._batcher: Optional[MessageBatcher] = None
        self._watchdog: Optional[IdleWatchdog] = None
        self._retry_timer: Optional[TimerHandle] = None
        self._attempt = 0
        self._auth_token: Any = _UNSET
        self._last_error: Optional[StreamError] = None

        self._state_observers: List[StateCallback] = []
        self._error_observers: List[ErrorCallback] = []

        # Counters for status reporting
        self._transports_opened = 0
        self._connections_established = 0
        self._frames_dropped = 0

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def attempt(self) -> int:
        """Number of the latest connection attempt in the current outage (0 when open)."""
        return self._attempt

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def pending_count(self) -> int:
        return self._batcher.pending_count if self._batcher else 0

    @property
    def last_error(self) -> Optional[StreamError]:
        return self._last_error

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> None:
        """
        Open the connection. No-op unless the manager is closed.

        Raises:
            RuntimeError: If no asyncio event loop is running; the manager
                stays closed
        """
        if self._state in (
            ConnectionState.OPEN,
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING
        ):
            self._log.debug(f"connect() ignored while {self._state.value}")
            return

        if self._state == ConnectionState.FAILED:
            self._log.warning("connect() ignored in failed state - call reconnect()")
            return

        self._scheduler.ensure_ready()
        self._attempt = 1
        self._open_transport()

    def disconnect(self) -> None:
        """
        Close the connection and stop reconnecting.

        Subscriptions stay registered so a later connect() resumes them.
        """
        self._cancel_retry()
        self._teardown_transport(CloseCode.NORMAL, "client disconnect")
        self._attempt = 0
        self._set_state(ConnectionState.CLOSED)

    def reconnect(self) -> None:
        """Drop any current transport and start over with a fresh attempt budget."""
        self._scheduler.ensure_ready()
        self._log.info(f"Manual reconnect from {self._state.value}")
        self._cancel_retry()
        self._teardown_transport(CloseCode.CLIENT_RECONNECT, "client reconnect")
        self._attempt = 1
        self._open_transport()

    async def wait_until_open(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the connection is open.

        Returns:
            True once open, False on timeout or if the manager ends up
            closed or failed first
        """
        if self._state == ConnectionState.OPEN:
            return True

        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def watch(change: StateChange) -> None:
            if future.done():
                return
            if change.current == ConnectionState.OPEN:
                future.set_result(True)
            elif change.current in (ConnectionState.CLOSED, ConnectionState.FAILED):
                future.set_result(False)

        remove = self.on_state_change(watch)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            remove()

    # =========================================================================
    # Topics and messages
    # =========================================================================

    def subscribe(self, topic: str, callback: MessageCallback) -> str:
        """
        Register a callback for a topic.

        A subscribe frame goes out only for the topic's first callback
        and only while open; otherwise the next open replays it.

        Returns:
            Subscription id for unsubscribe()
        """
        sub_id = self._registry.add(topic, callback)

        if self._state == ConnectionState.OPEN and self._registry.ref_count(topic) == 1:
            self._enqueue(OutboundFrame.subscribe(topic))

        self._log.debug(f"Subscribed {sub_id} to '{topic}'")
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        """Remove a subscription; the last one on a topic unsubscribes on the wire."""
        subscription = self._registry.get(sub_id)
        if subscription is None:
            self._log.warning(f"unsubscribe() for unknown id {sub_id}")
            return

        emptied = self._registry.remove(sub_id)
        if emptied and self._state == ConnectionState.OPEN:
            self._enqueue(OutboundFrame.unsubscribe(subscription.topic))

    def send(self, topic: str, data: Any) -> None:
        """
        Best-effort publish to a topic.

        Dropped (and logged) when not open; no delivery guarantee is made
        across disconnects.
        """
        if not isinstance(topic, str) or not topic:
            raise ValueError("topic must be a non-empty string")

        if self._state != ConnectionState.OPEN:
            self._frames_dropped += 1
            self._log.warning(f"Cannot send to '{topic}' - connection is {self._state.value}")
            return

        self._enqueue(OutboundFrame.payload(topic, data))

    def authenticate(self, token: Any) -> None:
        """
        Store a credential sent on every (re)open, ahead of the replay.

        Sent immediately as well when already open.
        """
        self._auth_token = token
        if self._state == ConnectionState.OPEN:
            self._enqueue(OutboundFrame.authenticate(token))

    # =========================================================================
    # Observers
    # =========================================================================

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """
        Observe state transitions.

        Returns:
            Function that removes the observer
        """
        self._state_observers.append(callback)
        return lambda: self._remove_observer(self._state_observers, callback)

    def on_error(self, callback: ErrorCallback) -> Callable[[], None]:
        """
        Observe error envelopes sent by the server.

        Returns:
            Function that removes the observer
        """
        self._error_observers.append(callback)
        return lambda: self._remove_observer(self._error_observers, callback)

    def stats(self) -> dict:
        """Snapshot of connection health for status reporting."""
        router_stats = self._router.stats
        return {
            "state": self._state.value,
            "url": self.config.url,
            "attempt": self._attempt,
            "topics": self._registry.topics,
            "subscriptions": len(self._registry),
            "pending_frames": self.pending_count,
            "transports_opened": self._transports_opened,
            "connections_established": self._connections_established,
            "envelopes_received": router_stats.envelopes_received,
            "messages_dispatched": router_stats.messages_dispatched,
            "protocol_errors": router_stats.protocol_errors,
            "callback_errors": router_stats.callback_errors,
            "frames_dropped": self._frames_dropped,
            "last_error": str(self._last_error) if self._last_error else None,
        }

    # =========================================================================
    # Transport handling
    # =========================================================================

    def _open_transport(self) -> None:
        """Build a fresh transport and start opening it."""
        callbacks = TransportCallbacks()
        transport = self._transport_factory(self.config.url, callbacks)

        callbacks.on_open = lambda: self._on_transport_open(transport)
        callbacks.on_message = lambda raw: self._on_transport_message(transport, raw)
        callbacks.on_close = lambda code, reason: self._on_transport_close(transport, code, reason)
        callbacks.on_error = lambda error: self._on_transport_error(transport, error)

        self._transport = transport
        self._transports_opened += 1
        self._set_state(ConnectionState.CONNECTING)
        self._log.info(f"Connecting to {self.config.url} (attempt {self._attempt})")

        try:
            transport.open()
        except Exception as e:
            self._log.error(f"Transport failed to start: {e!r}")
            self._on_transport_error(transport, TransportError(f"open failed: {e!r}"))

    def _on_transport_open(self, transport: Transport) -> None:
        if transport is not self._transport or self._state != ConnectionState.CONNECTING:
            self._log.debug("Ignoring open from stale transport")
            return

        self._attempt = 0
        self._last_error = None
        self._connections_established += 1

        batch = self.config.batch
        self._batcher = MessageBatcher(
            write=lambda envelope: self._write(transport, envelope),
            scheduler=self._scheduler,
            interval_ms=batch.interval_ms,
            max_batch_size=batch.max_batch_size,
            no_batch_types=batch.no_batch_types
        )

        if self._auth_token is not _UNSET:
            self._batcher.enqueue(OutboundFrame.authenticate(self._auth_token))

        plan = self._registry.resubscribe_plan()
        for topic in plan:
            self._batcher.enqueue(OutboundFrame.subscribe(topic))
        self._batcher.flush()

        if plan:
            self._log.info(f"Resubscribed to {len(plan)} topic(s)")

        if self.config.idle_timeout_ms:
            self._watchdog = IdleWatchdog(
                self._scheduler,
                self.config.idle_timeout_ms,
                on_idle=lambda idle: self._on_idle(transport, idle)
            )
            self._watchdog.start()

        self._set_state(ConnectionState.OPEN)

    def _on_transport_message(self, transport: Transport, raw: str | bytes) -> None:
        if transport is not self._transport:
            return
        if self._watchdog is not None:
            self._watchdog.touch()
        self._router.handle_raw(raw)

    def _on_transport_close(self, transport: Transport, code: int, reason: str) -> None:
        if transport is not self._transport:
            return
        self._handle_transport_down(TransportError(f"closed: {code} {reason}".rstrip(), code=code))

    def _on_transport_error(self, transport: Transport, error: TransportError) -> None:
        if transport is not self._transport:
            return
        self._handle_transport_down(error)

    def _on_idle(self, transport: Transport, idle: float) -> None:
        if transport is not self._transport:
            return
        self._handle_transport_down(
            TransportError(f"idle for {idle:.1f}s", code=CloseCode.IDLE_TIMEOUT),
            close_code=CloseCode.IDLE_TIMEOUT
        )

    def _handle_transport_down(
        self,
        error: TransportError,
        close_code: int = CloseCode.GOING_AWAY
    ) -> None:
        """Tear down the current transport and schedule a retry or give up."""
        if self._state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return

        self._teardown_transport(close_code, "transport lost")
        self._last_error = error
        self._log.warning(f"Transport lost: {error}")

        self._set_state(ConnectionState.RECONNECTING, error)
        # A state observer may have called disconnect() or reconnect()
        if self._state != ConnectionState.RECONNECTING:
            return

        next_attempt = self._attempt + 1
        delay = self._policy.next_delay(next_attempt)

        if delay is None:
            exhausted = ExhaustedRetries(self._attempt)
            self._last_error = exhausted
            self._log.error(f"Giving up: {exhausted}")
            self._set_state(ConnectionState.FAILED, exhausted)
            return

        self._log.info(f"Reconnecting in {delay:.2f}s (attempt {next_attempt})")
        self._retry_timer = self._scheduler.call_later(
            delay,
            lambda: self._on_retry_timer(next_attempt)
        )

    def _on_retry_timer(self, attempt: int) -> None:
        self._retry_timer = None
        if self._state != ConnectionState.RECONNECTING:
            return
        self._attempt = attempt
        self._open_transport()

    def _teardown_transport(self, code: int, reason: str) -> None:
        """Stop per-connection helpers and close the transport, if any."""
        if self._watchdog is not None:
            self._watchdog.stop()
            self._watchdog = None

        if self._batcher is not None:
            self._frames_dropped += self._batcher.stop()
            self._batcher = None

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                transport.close(code, reason)
            except Exception as e:
                self._log.debug(f"Error closing transport: {e!r}")

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    # =========================================================================
    # Outbound
    # =========================================================================

    def _enqueue(self, frame: OutboundFrame) -> None:
        if self._batcher is None:
            self._frames_dropped += 1
            self._log.debug(f"No open connection, dropping {frame.kind.value} frame")
            return
        self._batcher.enqueue(frame)

    def _write(self, transport: Transport, envelope: dict) -> None:
        if transport is not self._transport:
            return
        if not transport.send(envelope):
            self._log.warning(f"Transport refused {envelope.get('type')} envelope")

    def _send_pong(self) -> None:
        if self._state == ConnectionState.OPEN:
            self._enqueue(OutboundFrame.pong())

    # =========================================================================
    # Notifications
    # =========================================================================

    def _set_state(self, new_state: ConnectionState, error: Optional[Exception] = None) -> None:
        previous = self._state
        if new_state == previous:
            return

        self._state = new_state
        self._log.info(f"State {previous.value} -> {new_state.value}")

        change = StateChange(previous=previous, current=new_state, error=error)
        for observer in list(self._state_observers):
            try:
                observer(change)
            except Exception as e:
                self._log.error(f"Error in state observer: {e}", exc_info=True)

    def _notify_error(self, message: str) -> None:
        for observer in list(self._error_observers):
            try:
                observer(message)
            except Exception as e:
                self._log.error(f"Error in error observer: {e}", exc_info=True)

    @staticmethod
    def _remove_observer(observers: list, callback: Callable) -> None:
        try:
            observers.remove(callback)
        except ValueError:
            pass


def create_connection_manager(
    url: Optional[str] = None,
    **options: Any
) -> ConnectionManager:
    """
    Create a connection manager.

    With no arguments the configuration comes from the environment;
    otherwise `url` plus camelCase client options are used.
    """
    if url is None and not options:
        return ConnectionManager(StreamConfig.from_env())
    return ConnectionManager(StreamConfig.from_options({"url": url, **options}))
