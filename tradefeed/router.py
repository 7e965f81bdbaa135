"""
Message Router for inbound stream traffic.

Handles:
- Decoding and envelope validation
- Batch unwrapping (left to right, so per-topic order is preserved)
- Ping -> pong replies
- Server error reporting
- Topic dispatch with per-callback isolation

Malformed envelopes are logged and dropped one at a time; they never
affect the connection state or their neighbours in a batch.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .errors import CallbackError, ProtocolError
from .registry import SubscriptionRegistry
from .types import EnvelopeKind, InboundEnvelope


logger = logging.getLogger("tradefeed.router")


@dataclass
class RouterCallbacks:
    """Callbacks for the message router."""
    send_pong: Optional[Callable[[], None]] = None
    on_server_error: Optional[Callable[[str], None]] = None
    on_callback_error: Optional[Callable[[CallbackError], None]] = None


@dataclass
class RouterStats:
    envelopes_received: int = 0
    messages_dispatched: int = 0
    protocol_errors: int = 0
    callback_errors: int = 0
    unrouted: int = 0


class MessageRouter:
    """
    Routes inbound envelopes to subscription callbacks.

    The router only reads the registry; it never adds or removes
    subscriptions.
    """

    # Nested batches deeper than this are treated as malformed
    MAX_BATCH_DEPTH = 8

    def __init__(
        self,
        registry: SubscriptionRegistry,
        callbacks: Optional[RouterCallbacks] = None
    ):
        self.registry = registry
        self.callbacks = callbacks or RouterCallbacks()
        self.stats = RouterStats()

    def handle_raw(self, raw_data: str | bytes) -> int:
        """
        Handle one inbound transport frame.

        Returns:
            Number of callback invocations made
        """
        self.stats.envelopes_received += 1
        try:
            data = self.decode(raw_data)
        except ProtocolError as e:
            self._drop(e)
            return 0
        return self.handle_data(data)

    def handle_data(self, data: Any, depth: int = 0) -> int:
        """Validate and route an already-parsed envelope."""
        try:
            envelope = self.validate(data)
        except ProtocolError as e:
            self._drop(e)
            return 0

        kind = envelope.kind

        if kind == EnvelopeKind.PING:
            if self.callbacks.send_pong:
                self.callbacks.send_pong()
            return 0

        if kind == EnvelopeKind.ERROR:
            if envelope.error is None:
                message = "unspecified server error"
            elif isinstance(envelope.error, str):
                message = envelope.error
            else:
                message = json.dumps(envelope.error)
            logger.warning(f"Server error: {message}")
            if self.callbacks.on_server_error:
                try:
                    self.callbacks.on_server_error(message)
                except Exception as e:
                    logger.error(f"Error in server error handler: {e}", exc_info=True)
            return 0

        if kind == EnvelopeKind.BATCH:
            if depth >= self.MAX_BATCH_DEPTH:
                self._drop(ProtocolError("batch nested too deeply", raw=data))
                return 0
            delivered = 0
            for item in envelope.messages:
                delivered += self.handle_data(item, depth + 1)
            return delivered

        return self.dispatch(envelope.topic, envelope.data)

    def dispatch(self, topic: str, payload: Any) -> int:
        """
        Invoke every callback for a topic in registration order.

        A subscription removed by an earlier callback in the same round
        is skipped.
        """
        subscriptions = self.registry.subscriptions_for(topic)
        if not subscriptions:
            self.stats.unrouted += 1
            logger.debug(f"No subscribers for '{topic}', dropping message")
            return 0

        delivered = 0
        for sub in subscriptions:
            if not self.registry.is_active(sub.id):
                continue
            try:
                sub.callback(payload)
                delivered += 1
            except Exception as e:
                self.stats.callback_errors += 1
                error = CallbackError(topic, sub.id, e)
                logger.error(f"Subscriber callback failed: {error}", exc_info=True)
                if self.callbacks.on_callback_error:
                    try:
                        self.callbacks.on_callback_error(error)
                    except Exception as hook_error:
                        logger.error(f"Error in callback error hook: {hook_error}")

        self.stats.messages_dispatched += 1
        return delivered

    @staticmethod
    def decode(raw_data: str | bytes) -> Any:
        """Parse raw transport data as JSON."""
        try:
            text = raw_data if isinstance(raw_data, str) else raw_data.decode("utf-8")
            return json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"invalid JSON: {e}", raw=raw_data) from e

    @staticmethod
    def validate(data: Any) -> InboundEnvelope:
        """Validate a parsed value as an inbound envelope."""
        if not isinstance(data, dict):
            raise ProtocolError(f"envelope must be an object, got {type(data).__name__}", raw=data)
        try:
            return InboundEnvelope.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(
                f"invalid '{data.get('type')}' envelope: {e.error_count()} error(s)",
                raw=data
            ) from e

    def _drop(self, error: ProtocolError) -> None:
        self.stats.protocol_errors += 1
        logger.warning(f"Dropping inbound envelope: {error}")
