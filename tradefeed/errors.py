"""
Error taxonomy for the streaming client.

None of these are raised to callers of the public API during steady
state: transport failures feed the reconnect policy, protocol and
callback errors are logged, and exhausted retries surface through the
state-change observers.
"""

from typing import Any, Optional


class StreamError(Exception):
    """Base class for all tradefeed errors."""


class TransportError(StreamError):
    """Socket-level open, read or write failure."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ProtocolError(StreamError):
    """Inbound envelope that could not be parsed or validated."""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


class CallbackError(StreamError):
    """A subscriber callback raised during dispatch."""

    def __init__(self, topic: str, subscription_id: str, cause: BaseException):
        super().__init__(f"callback {subscription_id} for '{topic}' raised {cause!r}")
        self.topic = topic
        self.subscription_id = subscription_id
        self.__cause__ = cause


class ExhaustedRetries(StreamError):
    """The reconnect policy gave up."""

    def __init__(self, attempts: int):
        super().__init__(f"gave up reconnecting after {attempts} attempt(s)")
        self.attempts = attempts
