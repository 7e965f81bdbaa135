"""
Type definitions for the streaming subscription client.

Wire frames, inbound envelopes, subscription records and connection
state shared by every tradefeed component.
"""

from dataclasses import dataclass, field
from typing import Optional, Callable, Any, Literal
from enum import Enum
import time

from pydantic import BaseModel, ConfigDict, model_validator


class ConnectionState(str, Enum):
    """State of the logical streaming connection."""
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class FrameKind(str, Enum):
    """Kinds of outbound frames. Values are the wire "type" field."""
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PAYLOAD = "message"
    PONG = "pong"
    AUTHENTICATE = "authenticate"

    @classmethod
    def parse(cls, name: "str | FrameKind") -> "FrameKind":
        """
        Resolve a kind from its name ("payload") or wire type ("message").

        Raises:
            ValueError: for names that match no kind
        """
        if isinstance(name, cls):
            return name
        key = str(name).strip().lower()
        for kind in cls:
            if key in (kind.name.lower(), kind.value):
                return kind
        expected = ", ".join(kind.name.lower() for kind in cls)
        raise ValueError(f"unknown frame kind '{name}' (expected one of: {expected})")


class EnvelopeKind(str, Enum):
    """Kinds of inbound envelopes."""
    MESSAGE = "message"
    BATCH = "batch"
    PING = "ping"
    ERROR = "error"


BATCH_TYPE = "batch"


@dataclass
class OutboundFrame:
    """
    A frame queued for sending.

    Frames are converted to their wire dict only when written, so the
    batcher can decide per kind whether to coalesce or bypass.
    """
    kind: FrameKind
    topic: Optional[str] = None
    body: Any = None

    @classmethod
    def subscribe(cls, topic: str) -> "OutboundFrame":
        return cls(kind=FrameKind.SUBSCRIBE, topic=topic)

    @classmethod
    def unsubscribe(cls, topic: str) -> "OutboundFrame":
        return cls(kind=FrameKind.UNSUBSCRIBE, topic=topic)

    @classmethod
    def payload(cls, topic: str, data: Any) -> "OutboundFrame":
        return cls(kind=FrameKind.PAYLOAD, topic=topic, body=data)

    @classmethod
    def pong(cls) -> "OutboundFrame":
        return cls(kind=FrameKind.PONG)

    @classmethod
    def authenticate(cls, token: Any) -> "OutboundFrame":
        return cls(kind=FrameKind.AUTHENTICATE, body=token)

    def to_dict(self) -> dict:
        """Convert to the JSON wire envelope."""
        if self.kind in (FrameKind.SUBSCRIBE, FrameKind.UNSUBSCRIBE):
            return {"type": self.kind.value, "topic": self.topic}
        if self.kind == FrameKind.PAYLOAD:
            return {"type": self.kind.value, "topic": self.topic, "data": self.body}
        if self.kind == FrameKind.AUTHENTICATE:
            return {"type": self.kind.value, "token": self.body}
        return {"type": self.kind.value}


class InboundEnvelope(BaseModel):
    """
    Envelope received from the streaming server.

    Batch members are kept raw and validated one by one so a single bad
    element does not cost the rest of the batch.
    """
    model_config = ConfigDict(extra="allow")

    type: Literal["message", "batch", "ping", "error"]
    topic: Optional[str] = None
    data: Any = None
    messages: Optional[list[Any]] = None
    error: Any = None

    @model_validator(mode="after")
    def _check_shape(self) -> "InboundEnvelope":
        if self.type == "message" and not self.topic:
            raise ValueError("message envelope requires a non-empty topic")
        if self.type == "batch" and self.messages is None:
            raise ValueError("batch envelope requires a messages list")
        return self

    @property
    def kind(self) -> EnvelopeKind:
        return EnvelopeKind(self.type)


# Callback type definitions
MessageCallback = Callable[[Any], None]


@dataclass
class Subscription:
    """A registered callback for one topic."""
    id: str
    topic: str
    callback: MessageCallback
    created_at: float = field(default_factory=time.time)


@dataclass
class StateChange:
    """Notification delivered to state observers."""
    previous: ConnectionState
    current: ConnectionState
    error: Optional[Exception] = None


StateCallback = Callable[[StateChange], None]
ErrorCallback = Callable[[str], None]


# WebSocket close codes used by the client
class CloseCode:
    NORMAL = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    ABNORMAL = 1006
    INTERNAL_ERROR = 1011

    # Custom codes (4000-4999)
    IDLE_TIMEOUT = 4001
    CLIENT_RECONNECT = 4002
