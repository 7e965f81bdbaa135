"""
Configuration and logging setup for the tradefeed streaming client.

Provides dataclass configuration with environment variable support
and sensible defaults for connection, batching and reconnect settings.
"""

import os
import sys
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv

from .types import FrameKind

# Load environment variables
load_dotenv()


# =============================================================================
# Logging Configuration
# =============================================================================

class LogColors:
    """ANSI escape codes for the console formatter and startup banner."""
    RESET = "\033[0m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    GREY = "\033[90m"


class ColoredFormatter(logging.Formatter):
    """
    Console formatter for tradefeed loggers.

    Lines read `time level COMPONENT [state #attempt] message`. The
    bracketed connection context only appears on records carrying a
    `conn_state` attribute (ConnectionManager adds it to all of its
    records); the attempt is shown while it is non-zero.
    """

    LEVELS = {
        logging.DEBUG: ("DBG", LogColors.GREY),
        logging.INFO: ("INF", LogColors.GREEN),
        logging.WARNING: ("WRN", LogColors.YELLOW),
        logging.ERROR: ("ERR", LogColors.RED),
        logging.CRITICAL: ("CRT", LogColors.RED),
    }

    STATE_COLORS = {
        "open": LogColors.GREEN,
        "connecting": LogColors.CYAN,
        "reconnecting": LogColors.YELLOW,
        "failed": LogColors.RED,
        "closed": LogColors.GREY,
    }

    def __init__(self, use_colors: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.use_colors = use_colors and sys.stdout.isatty()

    def _paint(self, color: str, text: str) -> str:
        return f"{color}{text}{LogColors.RESET}" if self.use_colors else text

    @staticmethod
    def component(name: str) -> str:
        if name == "tradefeed":
            return "CLIENT"
        return name.removeprefix("tradefeed.").upper()

    def connection_context(self, record: logging.LogRecord) -> str:
        state = getattr(record, "conn_state", None)
        if state is None:
            return ""
        attempt = getattr(record, "conn_attempt", 0)
        text = f"[{state} #{attempt}]" if attempt else f"[{state}]"
        return self._paint(self.STATE_COLORS.get(state, LogColors.WHITE), text) + " "

    def format(self, record: logging.LogRecord) -> str:
        label, level_color = self.LEVELS.get(record.levelno, ("???", LogColors.WHITE))

        line = (
            f"{self._paint(LogColors.DIM, self.formatTime(record, self.datefmt))} "
            f"{self._paint(level_color, label)} "
            f"{self._paint(LogColors.MAGENTA, f'{self.component(record.name):10}')} "
            f"{self.connection_context(record)}{record.getMessage()}"
        )

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line



COMPONENTS = ["manager", "transport", "router", "batcher", "registry", "reconnect", "heartbeat", "status"]


def setup_logging(
    level: int | str = logging.INFO,
    use_colors: bool = True
) -> logging.Logger:
    """
    Configure and return the tradefeed logger.

    Only the application entry point should call this; the library itself
    never touches handlers.

    Args:
        level: Logging level (int or name such as "DEBUG")
        use_colors: Whether to use colored output

    Returns:
        The configured "tradefeed" logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    console_handler.setLevel(level)

    root.setLevel(level)
    root.addHandler(console_handler)

    feed_logger = logging.getLogger("tradefeed")
    feed_logger.setLevel(level)
    feed_logger.propagate = True

    for child in COMPONENTS:
        logging.getLogger(f"tradefeed.{child}").setLevel(level)

    # Silence noisy third-party loggers
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)

    return feed_logger


def print_startup_banner(host: str, port: int, url: str) -> None:
    """Print a short startup banner."""
    C = LogColors
    banner = f"""
{C.CYAN}  ╔╦╗╦═╗╔═╗╔╦╗╔═╗╔═╗╔═╗╔═╗╔╦╗
   ║ ╠╦╝╠═╣ ║║║╣ ╠╣ ║╣ ║╣  ║║
   ╩ ╩╚═╩ ╩═╩╝╚═╝╚  ╚═╝╚═╝═╩╝
{C.RESET}
  {C.GREEN}▸ Status:{C.WHITE}  http://{host}:{port}/stream/status
  {C.MAGENTA}▸ Stream:{C.WHITE}  {url}
{C.RESET}"""
    print(banner)


logger = logging.getLogger("tradefeed")


# =============================================================================
# Helpers
# =============================================================================

def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_optional_int(name: str) -> Optional[int]:
    """Read an optional integer; empty, "none" and "inf" mean unset."""
    raw = os.getenv(name, "").strip().lower()
    if raw in ("", "none", "inf", "infinity"):
        return None
    return int(raw)


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


# =============================================================================
# Stream Configuration
# =============================================================================

DEFAULT_NO_BATCH_TYPES = frozenset({FrameKind.AUTHENTICATE, FrameKind.PONG})


@dataclass
class ReconnectConfig:
    """Exponential backoff settings (milliseconds for parity with the wire client)."""
    base_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    max_attempts: Optional[int] = None  # None = retry forever
    jitter: float = 0.2

    def __post_init__(self):
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("reconnect delays must be non-negative")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_env(cls) -> "ReconnectConfig":
        """Create config from environment variables."""
        return cls(
            base_delay_ms=_env_int("TRADEFEED_RECONNECT_BASE_MS", 1_000),
            max_delay_ms=_env_int("TRADEFEED_RECONNECT_MAX_MS", 30_000),
            max_attempts=_env_optional_int("TRADEFEED_RECONNECT_MAX_ATTEMPTS"),
            jitter=float(os.getenv("TRADEFEED_RECONNECT_JITTER", "0.2")),
        )


@dataclass
class BatchConfig:
    """Outbound batching settings."""
    interval_ms: int = 50
    max_batch_size: int = 100
    no_batch_types: frozenset = field(default_factory=lambda: DEFAULT_NO_BATCH_TYPES)

    def __post_init__(self):
        if self.interval_ms < 0:
            raise ValueError("interval_ms must be non-negative")
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        # Accepts kind names ("payload") or wire types ("message"); unknown names raise
        self.no_batch_types = frozenset(FrameKind.parse(t) for t in self.no_batch_types)

    @classmethod
    def from_env(cls) -> "BatchConfig":
        """Create config from environment variables."""
        raw_types = os.getenv("TRADEFEED_NO_BATCH_TYPES")
        return cls(
            interval_ms=_env_int("TRADEFEED_BATCH_INTERVAL_MS", 50),
            max_batch_size=_env_int("TRADEFEED_MAX_BATCH_SIZE", 100),
            no_batch_types=frozenset(_split_csv(raw_types)) if raw_types is not None else DEFAULT_NO_BATCH_TYPES,
        )


@dataclass
class StreamConfig:
    """Streaming connection configuration."""
    url: str = "ws://127.0.0.1:8080/ws"
    batch: BatchConfig = field(default_factory=BatchConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)

    # Stale connection detection, None disables the watchdog
    idle_timeout_ms: Optional[int] = None

    # WebSocket settings (seconds)
    open_timeout: float = 10.0
    close_timeout: float = 10.0
    max_message_size: int = 10 * 1024 * 1024  # 10MB

    def __post_init__(self):
        if not self.url:
            raise ValueError("url is required")
        if self.idle_timeout_ms is not None and self.idle_timeout_ms <= 0:
            raise ValueError("idle_timeout_ms must be positive or None")

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """Create config from environment variables."""
        return cls(
            url=os.getenv("TRADEFEED_URL", "ws://127.0.0.1:8080/ws"),
            batch=BatchConfig.from_env(),
            reconnect=ReconnectConfig.from_env(),
            idle_timeout_ms=_env_optional_int("TRADEFEED_IDLE_TIMEOUT_MS"),
            open_timeout=float(os.getenv("TRADEFEED_OPEN_TIMEOUT", "10.0")),
        )

    @classmethod
    def from_options(cls, options: dict[str, Any]) -> "StreamConfig":
        """
        Create config from a client option object.

        Accepts the camelCase shape used by the browser client:
            {
                "url": "wss://...",
                "batchIntervalMs": 50,
                "maxBatchSize": 100,
                "reconnect": {"baseDelayMs": 1000, "maxDelayMs": 30000, "maxAttempts": 5},
                "noBatchTypes": ["authenticate", "pong"]
            }
        """
        reconnect_opts = options.get("reconnect") or {}
        no_batch = options.get("noBatchTypes")
        return cls(
            url=options["url"],
            batch=BatchConfig(
                interval_ms=options.get("batchIntervalMs", 50),
                max_batch_size=options.get("maxBatchSize", 100),
                no_batch_types=frozenset(no_batch) if no_batch is not None else DEFAULT_NO_BATCH_TYPES,
            ),
            reconnect=ReconnectConfig(
                base_delay_ms=reconnect_opts.get("baseDelayMs", 1_000),
                max_delay_ms=reconnect_opts.get("maxDelayMs", 30_000),
                max_attempts=reconnect_opts.get("maxAttempts"),
                jitter=reconnect_opts.get("jitter", 0.2),
            ),
            idle_timeout_ms=options.get("idleTimeoutMs"),
        )


# =============================================================================
# Server Configuration
# =============================================================================

@dataclass
class ServerConfig:
    """Status server configuration."""
    host: str = "127.0.0.1"
    port: int = 8766
    log_level: str = "INFO"

    # Topics subscribed by the bundled status app on startup
    topics: list = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Create config from environment variables."""
        return cls(
            host=os.getenv("SERVER_HOST", "127.0.0.1"),
            port=int(os.getenv("SERVER_PORT", "8766")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            topics=_split_csv(os.getenv("TRADEFEED_TOPICS", "")),
        )


# =============================================================================
# Composite Configuration
# =============================================================================

@dataclass
class Config:
    """Complete application configuration."""
    server: ServerConfig = field(default_factory=ServerConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Create complete config from environment."""
        return cls(
            server=ServerConfig.from_env(),
            stream=StreamConfig.from_env()
        )
