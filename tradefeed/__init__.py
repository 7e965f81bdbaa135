"""
Tradefeed streaming subscription client.

Keeps one logical connection to a topic-based streaming server alive
for the lifetime of the application.

Features:
- Connection state machine with exponential backoff reconnects
- Ref-counted topic subscriptions replayed after every reconnect
- Outbound batching with latency-sensitive bypass types
- Inbound batch unwrapping, ping/pong and per-callback isolation

Usage:
    import asyncio
    from tradefeed import ConnectionManager, StreamConfig

    async def main():
        manager = ConnectionManager(StreamConfig(url="wss://feed.example.com/ws"))
        manager.subscribe("ticker/BTC-ETH", lambda data: print(data["last"]))
        manager.connect()
        await manager.wait_until_open(timeout=10)
        await asyncio.sleep(60)
        manager.disconnect()

    asyncio.run(main())
"""

# Type definitions
from .types import (
    ConnectionState,
    FrameKind,
    EnvelopeKind,
    OutboundFrame,
    InboundEnvelope,
    Subscription,
    StateChange,
    CloseCode,
    MessageCallback,
    StateCallback,
    ErrorCallback
)

# Errors
from .errors import (
    StreamError,
    TransportError,
    ProtocolError,
    CallbackError,
    ExhaustedRetries
)

# Configuration
from .config import (
    Config,
    StreamConfig,
    BatchConfig,
    ReconnectConfig,
    ServerConfig,
    DEFAULT_NO_BATCH_TYPES,
    logger,
    setup_logging
)

# Building blocks
from .timers import Scheduler, LoopScheduler
from .reconnect import ReconnectPolicy
from .registry import SubscriptionRegistry
from .batcher import MessageBatcher
from .router import MessageRouter, RouterCallbacks, RouterStats
from .heartbeat import IdleWatchdog
from .transport import (
    Transport,
    TransportCallbacks,
    TransportFactory,
    WebSocketTransport,
    websocket_transport_factory
)

# Connection manager
from .manager import (
    ConnectionManager,
    create_connection_manager
)

__all__ = [
    # Types
    "ConnectionState",
    "FrameKind",
    "EnvelopeKind",
    "OutboundFrame",
    "InboundEnvelope",
    "Subscription",
    "StateChange",
    "CloseCode",
    "MessageCallback",
    "StateCallback",
    "ErrorCallback",

    # Errors
    "StreamError",
    "TransportError",
    "ProtocolError",
    "CallbackError",
    "ExhaustedRetries",

    # Configuration
    "Config",
    "StreamConfig",
    "BatchConfig",
    "ReconnectConfig",
    "ServerConfig",
    "DEFAULT_NO_BATCH_TYPES",
    "logger",
    "setup_logging",

    # Building blocks
    "Scheduler",
    "LoopScheduler",
    "ReconnectPolicy",
    "SubscriptionRegistry",
    "MessageBatcher",
    "MessageRouter",
    "RouterCallbacks",
    "RouterStats",
    "IdleWatchdog",
    "Transport",
    "TransportCallbacks",
    "TransportFactory",
    "WebSocketTransport",
    "websocket_transport_factory",

    # Manager
    "ConnectionManager",
    "create_connection_manager",
]

__version__ = "1.0.0"
